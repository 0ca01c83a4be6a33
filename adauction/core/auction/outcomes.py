"""
Bid Outcomes - Results of a submit_bid call.

Negotiation and payment-layer results are values, not exceptions: a
rejected proposal or a failed settlement is an expected answer the caller
acts on. Each outcome knows its HTTP status.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from adauction.core.payment.types import PaymentRequirements


@dataclass
class Accepted:
    """The bid settled and is now the current high bid."""
    status_code: ClassVar[int] = 200
    slot_id: str
    agent_id: str
    settled_amount: int
    settlement_ref: str
    payer_address: str
    time_remaining: int
    auction_end_time: float


@dataclass
class ProposalRejected:
    """The proposal is below the minimum; no payment was requested."""
    status_code: ClassVar[int] = 400
    your_proposal: int
    current_bid: Optional[int]
    minimum_required: int
    suggestion: int


@dataclass
class PaymentRequired:
    """Pay-per-request challenge describing exactly which payment is accepted."""
    status_code: ClassVar[int] = 402
    acceptable_range: Tuple[int, int]
    requirements: PaymentRequirements
    minimum_required: int
    current_bid: Optional[int]
    your_proposal: Optional[int]
    suggestion: int
    time_remaining: Optional[int]
    recent_bids: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def resource(self) -> str:
        return self.requirements.resource

    @property
    def scheme(self) -> str:
        return self.requirements.scheme


@dataclass
class VerificationFailed:
    """The facilitator (or the engine's own checks) rejected the proof."""
    status_code: ClassVar[int] = 402
    reason: str


@dataclass
class SettlementFailed:
    """The proof verified but did not settle."""
    status_code: ClassVar[int] = 402
    reason: str


@dataclass
class AuctionClosed:
    """The slot's auction is over; not retryable."""
    status_code: ClassVar[int] = 410
    reason: str


Outcome = Union[
    Accepted,
    ProposalRejected,
    PaymentRequired,
    VerificationFailed,
    SettlementFailed,
    AuctionClosed,
]
