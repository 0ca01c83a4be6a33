"""
Auction Lifecycle - Withdrawals, skips, ending and the creative flow.

End rule (withdrawal and skip):
    participants = roster + every agent that ever bid
    remaining    = participants - withdrawn - skipped
    remaining <= 1  ->  auction ends

The declared winner is the current winner while still remaining, else the
single remaining participant, else nobody. Time-based ending declares the
current winner.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from adauction.core.auction.events import (
    AgentSkippedEvent,
    AuctionEndedEvent,
    EventNotifier,
    ReflectionEvent,
    WithdrawalEvent,
    safe_notify,
)
from adauction.core.auction.record import (
    AuctionRecord,
    AuctionStatus,
    RefundStatus,
    WinningArtifact,
)
from adauction.core.config import AuctionConfig
from adauction.core.errors import (
    AuctionNotFound,
    CreativeNotAllowed,
    InvalidWithdrawal,
    TransferFailed,
)
from adauction.core.payment.refund import RefundIssuer
from adauction.core.pricing import format_usdc
from adauction.crypto import normalize_address
from adauction.utils.logger import get_logger

if TYPE_CHECKING:
    from adauction.core.storage import AuctionStore

logger = get_logger("lifecycle")


@dataclass
class WithdrawalOutcome:
    """Result of a successful withdrawal."""
    agent_id: str
    refunded_amount: int
    settlement_ref: Optional[str]
    auction_ended: bool
    winner: Optional[str] = None


@dataclass
class SkipOutcome:
    """Result of recording a skip."""
    agent_id: str
    active_bidders: Optional[int]
    auction_ended: bool
    winner: Optional[str] = None


class LifecycleController:
    """
    Non-bid transitions of a slot's auction.

    Owns the per-slot locks; the bid engine takes them after the
    settlement lock.
    """

    def __init__(
        self,
        store: "AuctionStore",
        refunds: RefundIssuer,
        config: Optional[AuctionConfig] = None,
        notifier: Optional[EventNotifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.refunds = refunds
        self.config = config or AuctionConfig()
        self.notifier = notifier
        self.clock = clock
        self._slot_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def slot_lock(self, slot_id: str) -> asyncio.Lock:
        return self._slot_locks[slot_id]

    def _require(self, slot_id: str) -> AuctionRecord:
        record = self.store.get_record(slot_id)
        if record is None:
            raise AuctionNotFound(f"No auction found for slot {slot_id}")
        return record

    # =========================================================================
    # Withdrawal
    # =========================================================================

    async def request_withdrawal(
        self,
        slot_id: str,
        agent_id: str,
        payout_address: str,
        reason: str = "",
    ) -> WithdrawalOutcome:
        """
        Withdraw a displaced bidder and refund its last bid.

        Raises:
            AuctionNotFound: No record for the slot
            InvalidWithdrawal: Current winner, no bids, repeated withdrawal
                or unknown payout address
            TransferFailed: The refund failed twice; the withdrawal is undone
        """
        async with self.slot_lock(slot_id):
            record = self._require(slot_id)

            if record.current_winner and record.current_winner.agent_id == agent_id:
                raise InvalidWithdrawal("Current winner cannot withdraw", 400)
            last = record.last_bid_by(agent_id)
            if last is None:
                raise InvalidWithdrawal(f"No bids found for agent {agent_id}", 404)
            if agent_id in record.withdrawn_agents:
                raise InvalidWithdrawal(f"Agent {agent_id} has already withdrawn", 400)

            addresses = {normalize_address(a) for a in record.payer_addresses_for(agent_id)}
            if normalize_address(payout_address) not in addresses:
                raise InvalidWithdrawal("Payout address does not match any bid by this agent", 403)

            self.store.update_record(slot_id, withdrawn_agents=record.withdrawn_agents + [agent_id])
            previous_status = last.refund_status
            owes_refund = previous_status in (RefundStatus.NONE, RefundStatus.FAILED)
            if owes_refund:
                self.store.set_refund_status(last.entry_id, RefundStatus.PENDING)

        refunded = 0
        refund_ref = None
        if owes_refund:
            try:
                refund_ref = await self.refunds.refund(payout_address, last.amount)
            except TransferFailed as e:
                async with self.slot_lock(slot_id):
                    record = self._require(slot_id)
                    self.store.update_record(
                        slot_id,
                        withdrawn_agents=[a for a in record.withdrawn_agents if a != agent_id],
                    )
                    self.store.set_refund_status(last.entry_id, RefundStatus.FAILED)
                self.store.record_failed_refund(
                    payout_address, last.amount, str(e), slot_id=slot_id, agent_id=agent_id
                )
                raise
            self.store.set_refund_status(last.entry_id, RefundStatus.REFUNDED, refund_ref)
            refunded = last.amount

        logger.info(f"[{slot_id}] {agent_id} withdrew, refunded {format_usdc(refunded)}")
        await safe_notify(self.notifier, WithdrawalEvent(
            slot_id=slot_id,
            agent_id=agent_id,
            amount=refunded,
            reason=reason,
            settlement_ref=refund_ref,
        ))

        async with self.slot_lock(slot_id):
            record = self._require(slot_id)
            ended, winner, _ = await self._apply_end_rule(record, "withdrawal")

        return WithdrawalOutcome(
            agent_id=agent_id,
            refunded_amount=refunded,
            settlement_ref=refund_ref,
            auction_ended=ended,
            winner=winner,
        )

    # =========================================================================
    # Skip
    # =========================================================================

    async def record_skip(self, slot_id: str, agent_id: str, reason: str = "") -> SkipOutcome:
        """Record that an agent declined to bid. Repeated skips are no-ops."""
        async with self.slot_lock(slot_id):
            record = self.store.get_record(slot_id)
            if record is None:
                self.store.ensure_record(slot_id)
                record = self._require(slot_id)

            if agent_id not in record.skipped_agents:
                record.skipped_agents.append(agent_id)
                self.store.update_record(slot_id, skipped_agents=record.skipped_agents)

            logger.info(f"[{slot_id}] {agent_id} skipped: {reason}")
            await safe_notify(self.notifier, AgentSkippedEvent(
                slot_id=slot_id,
                agent_id=agent_id,
                reason=reason,
            ))

            active = None
            ended = record.auction_ended
            winner = record.winner
            if self.config.bidder_roster:
                ended, winner, remaining = await self._apply_end_rule(record, "skip")
                active = len(remaining)

        return SkipOutcome(agent_id=agent_id, active_bidders=active, auction_ended=ended, winner=winner)

    # =========================================================================
    # Ending
    # =========================================================================

    def remaining_participants(self, record: AuctionRecord) -> List[str]:
        participants: List[str] = list(self.config.bidder_roster)
        for agent in record.bidders():
            if agent not in participants:
                participants.append(agent)
        return [
            a for a in participants
            if a not in record.withdrawn_agents and a not in record.skipped_agents
        ]

    async def _apply_end_rule(
        self,
        record: AuctionRecord,
        reason: str,
    ) -> Tuple[bool, Optional[str], List[str]]:
        """Caller holds the slot lock."""
        remaining = self.remaining_participants(record)
        if record.is_closed:
            return True, record.winner, remaining
        if len(remaining) > 1:
            return False, None, remaining

        current = record.current_winner.agent_id if record.current_winner else None
        if current is not None and current in remaining:
            winner = current
        elif len(remaining) == 1:
            winner = remaining[0]
        else:
            winner = None

        if reason == "withdrawal":
            text = "Other bidders withdrew"
        else:
            text = "Other bidders skipped"
        await self._end(record, text, winner)
        return True, winner, remaining

    async def _end(self, record: AuctionRecord, reason: str, winner: Optional[str]) -> None:
        self.store.update_record(
            record.slot_id,
            status=AuctionStatus.ENDED,
            auction_ended=True,
            auction_end_reason=reason,
            winner=winner,
        )
        record.status = AuctionStatus.ENDED
        record.auction_ended = True
        record.auction_end_reason = reason
        record.winner = winner

        logger.info(f"[{record.slot_id}] Auction ended ({reason}), winner: {winner or 'none'}")
        await safe_notify(self.notifier, AuctionEndedEvent(
            slot_id=record.slot_id,
            reason=reason,
            winner=winner,
            final_amount=record.current_bid,
        ))

    async def close_expired(self, record: AuctionRecord) -> bool:
        """End the auction if its time is up. True if this call ended it."""
        if record.is_closed or not record.is_expired(self.clock()):
            return False
        winner = record.current_winner.agent_id if record.current_winner else None
        await self._end(record, "Auction time expired", winner)
        return True

    async def expire_if_due(self, slot_id: str) -> bool:
        async with self.slot_lock(slot_id):
            record = self.store.get_record(slot_id)
            if record is None:
                return False
            return await self.close_expired(record)

    async def expire_due(self) -> List[str]:
        """Close every active auction whose end time has passed."""
        ended = []
        for slot_id in self.store.list_slots(AuctionStatus.ACTIVE):
            if await self.expire_if_due(slot_id):
                ended.append(slot_id)
        return ended

    # =========================================================================
    # Annotations
    # =========================================================================

    async def attach_reflection(self, slot_id: str, agent_id: str, reflection: str) -> bool:
        """
        Annotate the agent's most recent bid.

        Returns:
            False if the agent has no bid on this slot

        Raises:
            AuctionNotFound: No record for the slot
        """
        async with self.slot_lock(slot_id):
            self._require(slot_id)
            if not self.store.attach_reflection(slot_id, agent_id, reflection):
                return False

        await safe_notify(self.notifier, ReflectionEvent(
            slot_id=slot_id,
            agent_id=agent_id,
            reflection=reflection,
        ))
        return True

    # =========================================================================
    # Creative
    # =========================================================================

    async def authorize_creative(self, slot_id: str, agent_id: str) -> AuctionRecord:
        """Allow the declared winner to start producing the slot's creative."""
        record = self._require(slot_id)
        if not record.auction_ended:
            raise CreativeNotAllowed("Auction has not ended", 400)
        if record.winner is None or record.winner != agent_id:
            raise CreativeNotAllowed(f"Agent {agent_id} is not the winner", 403)
        if record.winning_artifact is not None:
            raise CreativeNotAllowed("Creative already generated", 409)
        return record

    async def complete_creative(self, slot_id: str, artifact: WinningArtifact) -> AuctionRecord:
        async with self.slot_lock(slot_id):
            record = self._require(slot_id)
            if not record.auction_ended:
                raise CreativeNotAllowed("Auction has not ended", 400)
            if record.winning_artifact is not None:
                raise CreativeNotAllowed("Creative already generated", 409)

            self.store.update_record(
                slot_id,
                winning_artifact=artifact,
                status=AuctionStatus.DISPLAYING_RESULT,
            )
        logger.info(f"[{slot_id}] Creative ready: {artifact.url}")
        return self._require(slot_id)


class ExpirySweeper:
    """Background task ending auctions whose time is up."""

    def __init__(self, lifecycle: LifecycleController, interval: float = 5.0):
        self.lifecycle = lifecycle
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Expiry sweeper started (every {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Expiry sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                ended = await self.lifecycle.expire_due()
            except Exception as e:
                logger.error(f"Expiry sweep failed: {e}")
                continue
            if ended:
                logger.info(f"Expired auctions: {', '.join(ended)}")
