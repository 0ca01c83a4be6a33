"""
Bid Engine - Negotiation and settlement of pay-per-request bids.

A bid request without a payment proof is a negotiation: the engine answers
with the minimum acceptable amount (ProposalRejected) or a payment challenge
describing exactly which payment it will accept (PaymentRequired). A request
with a proof is a settlement attempt.

Settlement order:
1. Decode the proof and verify it against freshly built requirements
2. Take the settlement lock, then the slot lock
3. Re-read the record, re-check that the auction is open and that the
   authorized value still covers the current minimum
4. Settle through the facilitator
5. Write record + bid entry + displaced flag in one transaction
6. Schedule the displaced winner's refund in the background

The settlement lock is shared with the RefundIssuer: every transfer leaving
or entering the custodial account is serialized through it.
"""

import asyncio
import time
from typing import TYPE_CHECKING, Callable, Optional, Set

from adauction.core.auction.events import (
    BidPlacedEvent,
    EventNotifier,
    RefundEvent,
    RefundFailedEvent,
    ThinkingEvent,
    safe_notify,
)
from adauction.core.auction.lifecycle import LifecycleController
from adauction.core.auction.outcomes import (
    Accepted,
    AuctionClosed,
    Outcome,
    PaymentRequired,
    ProposalRejected,
    SettlementFailed,
    VerificationFailed,
)
from adauction.core.auction.record import (
    AuctionRecord,
    AuctionStatus,
    BidEntry,
    RefundStatus,
    Winner,
)
from adauction.core.config import AuctionConfig
from adauction.core.errors import PaymentPayloadError, TransferFailed
from adauction.core.payment.facilitator import Facilitator
from adauction.core.payment.refund import RefundIssuer
from adauction.core.payment.types import PaymentRequirements, decode_payment_header
from adauction.core.pricing import IncrementPriceRule, PriceRule, format_usdc
from adauction.utils.logger import get_logger

if TYPE_CHECKING:
    from adauction.core.storage import AuctionStore

logger = get_logger("engine")

RECENT_BIDS = 5


class BidEngine:
    """
    Per-slot bid negotiation and settlement.

    Args:
        store: Durable auction record store
        facilitator: Payment verify/settle service
        refunds: Refund issuer (its lock becomes the settlement lock)
        lifecycle: Lifecycle controller owning the per-slot locks
        config: Server configuration
        price_rule: Minimum-bid policy (increment rule from config if omitted)
        notifier: Event sink
        resource_base: Public base URL used in payment requirements
        clock: Time source
    """

    def __init__(
        self,
        store: "AuctionStore",
        facilitator: Facilitator,
        refunds: RefundIssuer,
        lifecycle: LifecycleController,
        config: Optional[AuctionConfig] = None,
        price_rule: Optional[PriceRule] = None,
        notifier: Optional[EventNotifier] = None,
        resource_base: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.facilitator = facilitator
        self.refunds = refunds
        self.lifecycle = lifecycle
        self.config = config or AuctionConfig()
        self.price_rule = price_rule or IncrementPriceRule(
            self.config.starting_bid, self.config.bid_increment
        )
        self.notifier = notifier
        self.resource_base = resource_base.rstrip("/")
        self.clock = clock

        self.settlement_lock = refunds.lock
        self._refund_tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Public API
    # =========================================================================

    async def submit_bid(
        self,
        slot_id: str,
        agent_id: str,
        proposed_amount: Optional[int] = None,
        payment_proof: Optional[str] = None,
        thinking: Optional[str] = None,
        strategy_tag: Optional[str] = None,
        reasoning_text: Optional[str] = None,
    ) -> Outcome:
        """
        Negotiate or settle a bid.

        Args:
            slot_id: Ad slot
            agent_id: Bidding agent
            proposed_amount: Proposed bid in atomic units
            payment_proof: Base64 X-PAYMENT header value
            thinking: Free-text reasoning shown to observers
            strategy_tag: Agent strategy label
            reasoning_text: Reasoning sent in the negotiation header

        Returns:
            One of the Outcome variants
        """
        if payment_proof is None:
            return await self._negotiate(slot_id, agent_id, proposed_amount, thinking, strategy_tag)
        return await self._settle(
            slot_id, agent_id, payment_proof, thinking, strategy_tag, reasoning_text
        )

    async def drain_refunds(self) -> None:
        """Wait for all scheduled outbid refunds to finish."""
        while self._refund_tasks:
            await asyncio.gather(*list(self._refund_tasks), return_exceptions=True)

    @property
    def pending_refunds(self) -> int:
        return len(self._refund_tasks)

    # =========================================================================
    # Negotiation
    # =========================================================================

    async def _negotiate(
        self,
        slot_id: str,
        agent_id: str,
        proposed_amount: Optional[int],
        thinking: Optional[str],
        strategy_tag: Optional[str],
    ) -> Outcome:
        record = self.store.get_record(slot_id)
        closed = await self._closed_outcome(record, agent_id)
        if closed:
            return closed

        if proposed_amount is not None or thinking:
            await safe_notify(self.notifier, ThinkingEvent(
                slot_id=slot_id,
                agent_id=agent_id,
                proposed_amount=proposed_amount,
                thinking=thinking,
                strategy=strategy_tag,
            ))
            if self.config.thinking_delay > 0:
                await asyncio.sleep(self.config.thinking_delay)
                # The auction may have moved on during the delay
                record = self.store.get_record(slot_id)
                closed = await self._closed_outcome(record, agent_id)
                if closed:
                    return closed

        current_bid = record.current_bid if record else None
        minimum = self.price_rule.minimum_required(current_bid)

        if proposed_amount is not None and proposed_amount < minimum:
            logger.info(
                f"[{slot_id}] {agent_id} proposed {format_usdc(proposed_amount)}, "
                f"minimum is {format_usdc(minimum)}"
            )
            return ProposalRejected(
                your_proposal=proposed_amount,
                current_bid=current_bid,
                minimum_required=minimum,
                suggestion=minimum + self.config.rejection_buffer,
            )

        if record is None:
            self.store.ensure_record(slot_id)

        if proposed_amount is not None:
            low = high = proposed_amount
        else:
            low = minimum
            high = max(low, min(self.config.range_cap, minimum + self.config.range_spread))

        now = self.clock()
        return PaymentRequired(
            acceptable_range=(low, high),
            requirements=self._requirements(slot_id, max_amount=high, min_amount=low),
            minimum_required=minimum,
            current_bid=current_bid,
            your_proposal=proposed_amount,
            suggestion=minimum + self.config.negotiation_buffer,
            time_remaining=record.time_remaining(now) if record else None,
            recent_bids=[e.to_dict() for e in record.bid_history[-RECENT_BIDS:]] if record else [],
        )

    # =========================================================================
    # Settlement
    # =========================================================================

    async def _settle(
        self,
        slot_id: str,
        agent_id: str,
        payment_proof: str,
        thinking: Optional[str],
        strategy_tag: Optional[str],
        reasoning_text: Optional[str],
    ) -> Outcome:
        try:
            payment = decode_payment_header(payment_proof)
        except PaymentPayloadError as e:
            logger.warning(f"[{slot_id}] Undecodable payment from {agent_id}: {e}")
            return VerificationFailed("invalid_payload")

        record = self.store.get_record(slot_id)
        closed = await self._closed_outcome(record, agent_id)
        if closed:
            return closed

        minimum = self.price_rule.minimum_required(record.current_bid if record else None)
        requirements = self._requirements(slot_id, max_amount=minimum)

        verification = await self.facilitator.verify(payment, requirements)
        if not verification.is_valid:
            logger.warning(
                f"[{slot_id}] Payment from {agent_id} failed verification: "
                f"{verification.invalid_reason}"
            )
            return VerificationFailed(verification.invalid_reason or "verification_failed")

        async with self.settlement_lock:
            async with self.lifecycle.slot_lock(slot_id):
                record = self.store.get_record(slot_id)
                closed = await self._closed_outcome(record, agent_id)
                if closed:
                    return closed

                current_bid = record.current_bid if record else None
                fresh_minimum = self.price_rule.minimum_required(current_bid)
                if payment.authorized_value < fresh_minimum:
                    logger.warning(
                        f"[{slot_id}] {agent_id} authorized {format_usdc(payment.authorized_value)}, "
                        f"minimum moved to {format_usdc(fresh_minimum)}"
                    )
                    return VerificationFailed("amount_below_minimum")
                if fresh_minimum != minimum:
                    requirements = self._requirements(slot_id, max_amount=fresh_minimum)

                settlement = await self.facilitator.settle(payment, requirements)
                if not settlement.success:
                    logger.warning(
                        f"[{slot_id}] Settlement for {agent_id} failed: {settlement.error_reason}"
                    )
                    return SettlementFailed(settlement.error_reason or "settlement_failed")

                now = self.clock()
                amount = payment.authorized_value
                payer = (
                    settlement.payer
                    or verification.payer
                    or payment.payload.authorization.from_address
                )
                settlement_ref = settlement.transaction or ""

                start = record.auction_start_time if record and record.auction_start_time else now
                end = (
                    record.auction_end_time
                    if record and record.auction_end_time
                    else start + self.config.auction_duration
                )

                previous = record.current_winner if record else None
                displaced = record.last_bid_by(previous.agent_id) if previous else None

                entry = BidEntry(
                    agent_id=agent_id,
                    payer_address=payer,
                    amount=amount,
                    timestamp=now,
                    settlement_ref=settlement_ref,
                    thinking=thinking,
                    strategy_tag=strategy_tag,
                    reasoning_text=reasoning_text,
                )
                self.store.apply_settlement(
                    slot_id,
                    entry,
                    displaced,
                    current_bid=amount,
                    current_winner=Winner(
                        agent_id=agent_id,
                        payer_address=payer,
                        external_ref=payment.payload.authorization.nonce,
                        timestamp=now,
                    ),
                    status=AuctionStatus.ACTIVE,
                    auction_start_time=start,
                    auction_end_time=end,
                )

        logger.info(
            f"[{slot_id}] {agent_id} is now winning at {format_usdc(amount)} (tx {settlement_ref[:18]})"
        )
        await safe_notify(self.notifier, BidPlacedEvent(
            slot_id=slot_id,
            agent_id=agent_id,
            amount=amount,
            settlement_ref=settlement_ref,
        ))

        if previous is not None and displaced is not None:
            self._schedule_refund(
                slot_id,
                previous.agent_id,
                previous.payer_address,
                current_bid,
                displaced.entry_id,
            )

        return Accepted(
            slot_id=slot_id,
            agent_id=agent_id,
            settled_amount=amount,
            settlement_ref=settlement_ref,
            payer_address=payer,
            time_remaining=max(0, int(end - now)),
            auction_end_time=end,
        )

    # =========================================================================
    # Outbid Refunds
    # =========================================================================

    def _schedule_refund(
        self,
        slot_id: str,
        agent_id: str,
        payout_address: str,
        amount: int,
        entry_id: int,
    ) -> None:
        task = asyncio.create_task(
            self.refund_later(slot_id, agent_id, payout_address, amount, entry_id)
        )
        self._refund_tasks.add(task)
        task.add_done_callback(self._refund_done)

    def _refund_done(self, task: asyncio.Task) -> None:
        self._refund_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Outbid refund task crashed: {task.exception()!r}")

    async def refund_later(
        self,
        slot_id: str,
        agent_id: str,
        payout_address: str,
        amount: int,
        entry_id: int,
    ) -> Optional[str]:
        """
        Refund a displaced winner after the refund delay.

        Returns:
            Refund transaction reference, or None if the refund failed
        """
        if self.config.refund_delay > 0:
            await asyncio.sleep(self.config.refund_delay)

        try:
            refund_ref = await self.refunds.refund(payout_address, amount)
        except TransferFailed as e:
            self.store.set_refund_status(entry_id, RefundStatus.FAILED)
            self.store.record_failed_refund(
                payout_address, amount, str(e), slot_id=slot_id, agent_id=agent_id
            )
            await safe_notify(self.notifier, RefundFailedEvent(
                slot_id=slot_id,
                agent_id=agent_id,
                amount=amount,
                reason=str(e),
            ))
            return None

        self.store.set_refund_status(entry_id, RefundStatus.REFUNDED, refund_ref)
        await safe_notify(self.notifier, RefundEvent(
            slot_id=slot_id,
            agent_id=agent_id,
            amount=amount,
            settlement_ref=refund_ref,
        ))
        return refund_ref

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _closed_outcome(
        self,
        record: Optional[AuctionRecord],
        agent_id: str,
    ) -> Optional[AuctionClosed]:
        if record is None:
            return None
        if record.is_closed:
            return AuctionClosed("Auction has ended")
        if await self.lifecycle.close_expired(record):
            return AuctionClosed("Auction time has expired")
        if agent_id in record.withdrawn_agents:
            return AuctionClosed("Agent has withdrawn from this auction")
        return None

    def _requirements(
        self,
        slot_id: str,
        max_amount: int,
        min_amount: Optional[int] = None,
    ) -> PaymentRequirements:
        return PaymentRequirements(
            network=self.config.network,
            max_amount_required=str(max_amount),
            min_amount_required=str(min_amount) if min_amount is not None else None,
            resource=f"{self.resource_base}/bid/{slot_id}",
            description=f"Bid on ad slot {slot_id}",
            pay_to=self.config.pay_to,
            max_timeout_seconds=self.config.max_timeout_seconds,
            asset=self.config.asset,
            extra={"name": self.config.asset_name, "version": self.config.asset_version},
        )
