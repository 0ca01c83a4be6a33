"""
Auction Record - Per-slot auction state.

One AuctionRecord exists per ad slot. It holds the settled high bid, the
current winner, the append-only bid history and the lifecycle bookkeeping
(withdrawals, skips, end reason, declared winner, creative artifact).

Amounts are integer atomic USDC units. Timestamps are epoch seconds.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


# =============================================================================
# Enums
# =============================================================================


class AuctionStatus(str, Enum):
    """Lifecycle state of a slot's auction."""
    ACTIVE = "active"
    ENDED = "ended"
    DISPLAYING_RESULT = "displaying_result"


class RefundStatus(str, Enum):
    """Refund state of a single bid entry."""
    NONE = "none"          # Bid never displaced (or not yet)
    PENDING = "pending"    # Outbid refund scheduled
    REFUNDED = "refunded"  # Money returned to the payer
    FAILED = "failed"      # Primary and retry both failed


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class Winner:
    """Owner of the current high bid."""
    agent_id: str
    payer_address: str
    external_ref: str
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "agentId": self.agent_id,
            "walletAddress": self.payer_address,
            "externalId": self.external_ref,
            "timestamp": self.timestamp,
        }


@dataclass
class BidEntry:
    """
    A settled bid.

    Attributes:
        entry_id: Store-assigned row id (None until persisted)
        agent_id: Bidding agent
        payer_address: Address that authorized the payment
        amount: Settled amount (atomic units)
        timestamp: Settlement time
        settlement_ref: Settlement transaction reference
        thinking: Free-text reasoning sent with the bid
        strategy_tag: Agent-chosen strategy label
        reasoning_text: Reasoning sent in the negotiation header
        reflection_text: Post-hoc annotation, attached to the agent's last entry
        refund_status: Refund bookkeeping for displaced bids
        refund_ref: Refund transaction reference
    """
    agent_id: str
    payer_address: str
    amount: int
    timestamp: float
    settlement_ref: str
    thinking: Optional[str] = None
    strategy_tag: Optional[str] = None
    reasoning_text: Optional[str] = None
    reflection_text: Optional[str] = None
    refund_status: RefundStatus = RefundStatus.NONE
    refund_ref: Optional[str] = None
    entry_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "agentId": self.agent_id,
            "walletAddress": self.payer_address,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "txHash": self.settlement_ref,
            "thinking": self.thinking,
            "strategy": self.strategy_tag,
            "reasoning": self.reasoning_text,
            "reflection": self.reflection_text,
            "refundStatus": self.refund_status.value,
            "refundTxHash": self.refund_ref,
        }


@dataclass
class WinningArtifact:
    """Creative produced for the winner after the auction ends."""
    url: str
    prompt: str
    task_ref: str
    generated_at: float

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "prompt": self.prompt,
            "taskId": self.task_ref,
            "generatedAt": self.generated_at,
        }


@dataclass
class AuctionRecord:
    """Durable auction state for one ad slot."""
    slot_id: str
    current_bid: Optional[int] = None
    current_winner: Optional[Winner] = None
    bid_history: List[BidEntry] = field(default_factory=list)
    status: AuctionStatus = AuctionStatus.ACTIVE
    auction_start_time: Optional[float] = None
    auction_end_time: Optional[float] = None
    withdrawn_agents: List[str] = field(default_factory=list)
    skipped_agents: List[str] = field(default_factory=list)
    auction_ended: bool = False
    auction_end_reason: Optional[str] = None
    winner: Optional[str] = None
    winning_artifact: Optional[WinningArtifact] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def is_closed(self) -> bool:
        """Terminal for bidding (ended or showing the result)."""
        return self.status != AuctionStatus.ACTIVE or self.auction_ended

    def is_expired(self, now: float) -> bool:
        return self.auction_end_time is not None and now > self.auction_end_time

    def time_remaining(self, now: float) -> Optional[int]:
        """Whole seconds left, or None before the first accepted bid."""
        if self.auction_end_time is None:
            return None
        return max(0, int(self.auction_end_time - now))

    def bidders(self) -> List[str]:
        """Distinct bidding agents in first-bid order."""
        seen: List[str] = []
        for entry in self.bid_history:
            if entry.agent_id not in seen:
                seen.append(entry.agent_id)
        return seen

    def last_bid_index(self, agent_id: str) -> int:
        """
        Index of the agent's most recent entry, or -1.

        Bid entries carry no agent-supplied id, so annotations are
        correlated to the last entry by that agent.
        """
        for i in range(len(self.bid_history) - 1, -1, -1):
            if self.bid_history[i].agent_id == agent_id:
                return i
        return -1

    def last_bid_by(self, agent_id: str) -> Optional[BidEntry]:
        index = self.last_bid_index(agent_id)
        return self.bid_history[index] if index >= 0 else None

    def payer_addresses_for(self, agent_id: str) -> List[str]:
        return [e.payer_address for e in self.bid_history if e.agent_id == agent_id]

    def to_dict(self, now: Optional[float] = None) -> dict:
        data = {
            "adSpotId": self.slot_id,
            "currentBid": self.current_bid,
            "currentWinner": self.current_winner.to_dict() if self.current_winner else None,
            "status": self.status.value,
            "auctionStartTime": self.auction_start_time,
            "auctionEndTime": self.auction_end_time,
            "withdrawnAgents": list(self.withdrawn_agents),
            "skippedAgents": list(self.skipped_agents),
            "auctionEnded": self.auction_ended,
            "auctionEndReason": self.auction_end_reason,
            "winner": self.winner,
            "winnerAdImage": self.winning_artifact.to_dict() if self.winning_artifact else None,
            "bidHistory": [e.to_dict() for e in self.bid_history],
        }
        if now is not None:
            data["timeRemaining"] = self.time_remaining(now)
        return data
