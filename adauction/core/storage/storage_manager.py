import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from adauction.core.auction.record import (
    AuctionRecord,
    AuctionStatus,
    BidEntry,
    RefundStatus,
    Winner,
    WinningArtifact,
)
from adauction.core.storage.sqlite_adapter import SQLiteAdapter
from adauction.utils.logger import get_logger

logger = get_logger("storage.manager")


class AuctionStore:
    """
    Durable store of per-slot auction records.

    Maps SQLite rows to AuctionRecord objects and back. Handles:
    - Upsert-style partial record updates
    - Atomic settlement writes (record + appended bid + displaced flag)
    - Last-match reflection annotation
    - Refund bookkeeping and the failed-refund log
    """

    def __init__(
        self,
        data_dir: Path,
        db_name: str = "auction.db",
        clock: Callable[[], float] = time.time,
    ):
        self.data_dir = data_dir
        self.db_path = data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)
        self.clock = clock

        logger.info(f"AuctionStore initialized at {self.db_path}")

    # =========================================================================
    # Records
    # =========================================================================

    def get_record(self, slot_id: str) -> Optional[AuctionRecord]:
        """Load a slot's record with its bid history, or None."""
        row = self.adapter.get_record(slot_id)
        if row is None:
            return None
        bids = [self._bid_from_row(b) for b in self.adapter.get_bids(slot_id)]
        return self._record_from_row(row, bids)

    def update_record(self, slot_id: str, **fields: Any) -> None:
        """Create the record if missing, then set the given fields."""
        self.adapter.upsert_record(slot_id, self._to_columns(fields), self.clock())

    def ensure_record(self, slot_id: str) -> bool:
        """Create an active record if the slot has none. True if one was created."""
        return self.adapter.insert_record(slot_id, self.clock())

    def list_slots(self, status: Optional[AuctionStatus] = None) -> List[str]:
        return self.adapter.get_slot_ids(status.value if status else None)

    # =========================================================================
    # Bids
    # =========================================================================

    def apply_settlement(
        self,
        slot_id: str,
        entry: BidEntry,
        displaced: Optional[BidEntry] = None,
        **record_fields: Any,
    ) -> BidEntry:
        """
        Record an accepted bid in a single transaction.

        Returns:
            The appended entry with its entry_id set
        """
        entry.entry_id = self.adapter.apply_settlement(
            slot_id,
            self._to_columns(record_fields),
            self._bid_to_row(entry),
            displaced.entry_id if displaced else None,
            self.clock(),
        )
        if displaced is not None:
            displaced.refund_status = RefundStatus.PENDING
        return entry

    def set_refund_status(
        self,
        entry_id: int,
        status: RefundStatus,
        refund_ref: Optional[str] = None,
    ) -> None:
        fields: Dict[str, Any] = {"refund_status": status.value}
        if refund_ref is not None:
            fields["refund_ref"] = refund_ref
        self.adapter.update_bid(entry_id, fields)

    def attach_reflection(self, slot_id: str, agent_id: str, reflection: str) -> bool:
        """Annotate the agent's most recent bid. False if the agent never bid."""
        return self.adapter.set_last_reflection(slot_id, agent_id, reflection) is not None

    # =========================================================================
    # Failed Refunds
    # =========================================================================

    def record_failed_refund(
        self,
        payout_address: str,
        amount: int,
        reason: str,
        slot_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> None:
        self.adapter.save_failed_refund(slot_id, agent_id, payout_address, amount, reason, self.clock())

    def failed_refunds(self) -> List[Dict[str, Any]]:
        return self.adapter.get_failed_refunds()

    # =========================================================================
    # Row Mapping
    # =========================================================================

    @staticmethod
    def _to_columns(fields: Dict[str, Any]) -> Dict[str, Any]:
        columns = {}
        for key, value in fields.items():
            if isinstance(value, AuctionStatus):
                value = value.value
            elif isinstance(value, Winner):
                value = {
                    "agent_id": value.agent_id,
                    "payer_address": value.payer_address,
                    "external_ref": value.external_ref,
                    "timestamp": value.timestamp,
                }
            elif isinstance(value, WinningArtifact):
                value = {
                    "url": value.url,
                    "prompt": value.prompt,
                    "task_ref": value.task_ref,
                    "generated_at": value.generated_at,
                }
            columns[key] = value
        return columns

    @staticmethod
    def _bid_to_row(entry: BidEntry) -> Dict[str, Any]:
        return {
            "agent_id": entry.agent_id,
            "payer_address": entry.payer_address,
            "amount": entry.amount,
            "timestamp": entry.timestamp,
            "settlement_ref": entry.settlement_ref,
            "thinking": entry.thinking,
            "strategy_tag": entry.strategy_tag,
            "reasoning_text": entry.reasoning_text,
            "reflection_text": entry.reflection_text,
            "refund_status": entry.refund_status.value,
            "refund_ref": entry.refund_ref,
        }

    @staticmethod
    def _bid_from_row(row: Dict[str, Any]) -> BidEntry:
        return BidEntry(
            entry_id=row["entry_id"],
            agent_id=row["agent_id"],
            payer_address=row["payer_address"],
            amount=row["amount"],
            timestamp=row["timestamp"],
            settlement_ref=row["settlement_ref"],
            thinking=row["thinking"],
            strategy_tag=row["strategy_tag"],
            reasoning_text=row["reasoning_text"],
            reflection_text=row["reflection_text"],
            refund_status=RefundStatus(row["refund_status"]),
            refund_ref=row["refund_ref"],
        )

    @staticmethod
    def _record_from_row(row: Dict[str, Any], bids: List[BidEntry]) -> AuctionRecord:
        winner = row["current_winner"]
        artifact = row["winning_artifact"]
        return AuctionRecord(
            slot_id=row["slot_id"],
            current_bid=row["current_bid"],
            current_winner=Winner(**winner) if winner else None,
            bid_history=bids,
            status=AuctionStatus(row["status"]),
            auction_start_time=row["auction_start_time"],
            auction_end_time=row["auction_end_time"],
            withdrawn_agents=row["withdrawn_agents"] or [],
            skipped_agents=row["skipped_agents"] or [],
            auction_ended=row["auction_ended"],
            auction_end_reason=row["auction_end_reason"],
            winner=row["winner"],
            winning_artifact=WinningArtifact(**artifact) if artifact else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
