"""
Service wiring - Builds the store, payment adapters, lifecycle and engine
from an AuctionConfig.

With FACILITATOR_URL / WALLET_SERVICE_URL set, payments go through the
remote services. Without them an in-process Ledger backs both the
facilitator and the custodial wallet (development and the demo).
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from adauction.core.auction.engine import BidEngine
from adauction.core.auction.events import EventNotifier, LoggingNotifier
from adauction.core.auction.lifecycle import ExpirySweeper, LifecycleController
from adauction.core.config import AuctionConfig
from adauction.core.payment.facilitator import Facilitator, HttpFacilitator
from adauction.core.payment.local import Ledger, LocalFacilitator
from adauction.core.payment.refund import (
    HttpWalletTransport,
    LedgerWallet,
    RefundIssuer,
    WalletTransport,
)
from adauction.core.pricing import PriceRule
from adauction.core.storage import AuctionStore
from adauction.crypto import generate_keypair
from adauction.utils.logger import get_logger

logger = get_logger("service")


@dataclass
class AuctionService:
    """Everything a transport layer needs to serve auctions."""
    config: AuctionConfig
    store: AuctionStore
    facilitator: Facilitator
    refunds: RefundIssuer
    lifecycle: LifecycleController
    engine: BidEngine
    sweeper: ExpirySweeper
    notifier: EventNotifier
    ledger: Optional[Ledger] = None

    async def close(self) -> None:
        await self.engine.drain_refunds()
        for client in (self.facilitator, self.refunds.transport):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def build_service(
    config: AuctionConfig,
    notifier: Optional[EventNotifier] = None,
    facilitator: Optional[Facilitator] = None,
    wallet: Optional[WalletTransport] = None,
    price_rule: Optional[PriceRule] = None,
    ledger: Optional[Ledger] = None,
    resource_base: str = "",
    clock: Callable[[], float] = time.time,
) -> AuctionService:
    """
    Assemble an AuctionService.

    Args:
        config: Server configuration
        notifier: Event sink (logs events if omitted)
        facilitator: Override the configured facilitator
        wallet: Override the configured custodial wallet
        price_rule: Override the increment rule
        ledger: Ledger backing local payments (created when needed)
        resource_base: Public base URL for payment requirements
        clock: Time source shared by every component

    Raises:
        ValueError: Remote payments configured without PAY_TO_ADDRESS
    """
    remote = bool(config.facilitator_url or config.wallet_service_url)

    if remote and not config.pay_to:
        raise ValueError("PAY_TO_ADDRESS is required with a remote facilitator or wallet service")

    if (facilitator is None and not config.facilitator_url) or (
        wallet is None and not config.wallet_service_url
    ):
        ledger = ledger or Ledger()
        if not config.pay_to:
            config.pay_to = generate_keypair().address
            logger.info(f"No PAY_TO_ADDRESS set, using local custody address {config.pay_to}")

    if facilitator is None:
        if config.facilitator_url:
            facilitator = HttpFacilitator(config.facilitator_url)
        else:
            facilitator = LocalFacilitator(ledger, clock=clock)

    if wallet is None:
        if config.wallet_service_url:
            wallet = HttpWalletTransport(config.wallet_service_url)
        else:
            wallet = LedgerWallet(ledger, config.pay_to)

    notifier = notifier or LoggingNotifier()
    store = AuctionStore(config.data_dir, config.db_name, clock=clock)
    refunds = RefundIssuer(wallet, retry_delay=config.refund_retry_delay)
    lifecycle = LifecycleController(store, refunds, config, notifier=notifier, clock=clock)
    engine = BidEngine(
        store,
        facilitator,
        refunds,
        lifecycle,
        config,
        price_rule=price_rule,
        notifier=notifier,
        resource_base=resource_base,
        clock=clock,
    )

    return AuctionService(
        config=config,
        store=store,
        facilitator=facilitator,
        refunds=refunds,
        lifecycle=lifecycle,
        engine=engine,
        sweeper=ExpirySweeper(lifecycle, config.sweep_interval),
        notifier=notifier,
        ledger=ledger,
    )
