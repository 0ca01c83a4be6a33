"""
Auction Events - Lifecycle notifications for observers.

Each event kind is its own frozen dataclass carrying only the fields that
kind needs. The notifier is fire-and-forget from the core's point of view:
a failing sink is logged and never affects bidding or settlement.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import ClassVar, Optional, Union

from adauction.utils.logger import get_logger

logger = get_logger("events")


def _now() -> float:
    return time.time()


# =============================================================================
# Event Kinds
# =============================================================================


@dataclass(frozen=True)
class ThinkingEvent:
    """An agent's proposal and reasoning, before any payment."""
    type: ClassVar[str] = "thinking"
    slot_id: str
    agent_id: str
    proposed_amount: Optional[int] = None
    thinking: Optional[str] = None
    strategy: Optional[str] = None
    timestamp: float = field(default_factory=_now)


@dataclass(frozen=True)
class BidPlacedEvent:
    """A bid settled and became the current high bid."""
    type: ClassVar[str] = "bid_placed"
    slot_id: str
    agent_id: str
    amount: int
    settlement_ref: str
    timestamp: float = field(default_factory=_now)


@dataclass(frozen=True)
class RefundEvent:
    """A displaced bid was refunded."""
    type: ClassVar[str] = "refund"
    slot_id: str
    agent_id: str
    amount: int
    settlement_ref: str
    timestamp: float = field(default_factory=_now)


@dataclass(frozen=True)
class RefundFailedEvent:
    """A refund failed its primary attempt and its retry."""
    type: ClassVar[str] = "refund_failed"
    slot_id: str
    agent_id: str
    amount: int
    reason: str
    timestamp: float = field(default_factory=_now)


@dataclass(frozen=True)
class WithdrawalEvent:
    """A displaced bidder left the auction and was refunded."""
    type: ClassVar[str] = "withdrawal"
    slot_id: str
    agent_id: str
    amount: int
    reason: str
    settlement_ref: Optional[str] = None
    timestamp: float = field(default_factory=_now)


@dataclass(frozen=True)
class AgentSkippedEvent:
    """An agent declined to bid on the slot at all."""
    type: ClassVar[str] = "agent_skipped"
    slot_id: str
    agent_id: str
    reason: str
    timestamp: float = field(default_factory=_now)


@dataclass(frozen=True)
class ReflectionEvent:
    """An agent annotated its most recent bid."""
    type: ClassVar[str] = "reflection"
    slot_id: str
    agent_id: str
    reflection: str
    timestamp: float = field(default_factory=_now)


@dataclass(frozen=True)
class AuctionEndedEvent:
    """The auction closed; winner is None when nobody remained."""
    type: ClassVar[str] = "auction_ended"
    slot_id: str
    reason: str
    winner: Optional[str] = None
    final_amount: Optional[int] = None
    timestamp: float = field(default_factory=_now)


AuctionEvent = Union[
    ThinkingEvent,
    BidPlacedEvent,
    RefundEvent,
    RefundFailedEvent,
    WithdrawalEvent,
    AgentSkippedEvent,
    ReflectionEvent,
    AuctionEndedEvent,
]


def event_to_dict(event: AuctionEvent) -> dict:
    """Flat dict with the event kind under "type"."""
    data = asdict(event)
    data["type"] = event.type
    return data


# =============================================================================
# Notifiers
# =============================================================================


class EventNotifier(ABC):
    """Sink for auction events."""

    @abstractmethod
    async def notify(self, event: AuctionEvent) -> None:
        """Deliver one event."""


class LoggingNotifier(EventNotifier):
    """Writes every event to the log."""

    async def notify(self, event: AuctionEvent) -> None:
        agent = getattr(event, "agent_id", "system")
        logger.info(f"[{event.slot_id}] [{agent}] {event.type}: {event_to_dict(event)}")


class RecordingNotifier(EventNotifier):
    """Keeps events in memory, in delivery order."""

    def __init__(self):
        self.events: list = []

    async def notify(self, event: AuctionEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e.type == event_type]


async def safe_notify(notifier: Optional[EventNotifier], event: AuctionEvent) -> None:
    """Deliver an event, logging (never raising) on sink failure."""
    if notifier is None:
        return
    try:
        await notifier.notify(event)
    except Exception as e:
        logger.warning(f"Event sink failed for {event.type} on {event.slot_id}: {e}")
