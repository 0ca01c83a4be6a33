"""
Auction Module.

This module provides the per-slot auction:
- Auction records and bid entries
- Lifecycle events and notifiers
- Bid negotiation and settlement
- Withdrawal, skip, expiry and the creative flow
"""

from adauction.core.auction.record import (
    AuctionRecord,
    AuctionStatus,
    BidEntry,
    RefundStatus,
    Winner,
    WinningArtifact,
)

from adauction.core.auction.events import (
    AuctionEvent,
    EventNotifier,
    LoggingNotifier,
    RecordingNotifier,
    event_to_dict,
)

from adauction.core.auction.outcomes import (
    Accepted,
    AuctionClosed,
    Outcome,
    PaymentRequired,
    ProposalRejected,
    SettlementFailed,
    VerificationFailed,
)

from adauction.core.auction.lifecycle import (
    LifecycleController,
    ExpirySweeper,
    WithdrawalOutcome,
    SkipOutcome,
)

from adauction.core.auction.engine import BidEngine
