"""
Unit tests for the SQLite auction record store.
"""

import pytest
import tempfile
from pathlib import Path

from adauction.core.auction.record import (
    AuctionStatus,
    BidEntry,
    RefundStatus,
    Winner,
    WinningArtifact,
)
from adauction.core.storage import AuctionStore, SQLiteAdapter


def make_entry(agent_id: str, amount: int, ts: float = 1000.0) -> BidEntry:
    return BidEntry(
        agent_id=agent_id,
        payer_address="0x" + agent_id[-1] * 40,
        amount=amount,
        timestamp=ts,
        settlement_ref=f"0xtx-{agent_id}-{amount}",
    )


@pytest.fixture
def store(tmp_path):
    return AuctionStore(tmp_path, clock=lambda: 1000.0)


class TestRecords:
    """Tests for record upsert and loading."""

    def test_missing_record_is_none(self, store):
        assert store.get_record("nope") is None

    def test_update_creates_record_with_defaults(self, store):
        """First update creates an active, empty record."""
        store.update_record("slot-1")
        record = store.get_record("slot-1")

        assert record.status == AuctionStatus.ACTIVE
        assert record.current_bid is None
        assert record.bid_history == []
        assert record.withdrawn_agents == []
        assert record.auction_ended is False
        assert record.created_at == 1000.0

    def test_ensure_record_never_overwrites(self, store):
        """Creating a record that already exists leaves its state alone."""
        assert store.ensure_record("slot-1")
        store.update_record("slot-1", status=AuctionStatus.ENDED, auction_ended=True, winner="agent-b")

        assert not store.ensure_record("slot-1")
        record = store.get_record("slot-1")
        assert record.status == AuctionStatus.ENDED
        assert record.auction_ended
        assert record.winner == "agent-b"

    def test_partial_update_keeps_other_fields(self, store):
        """Only the given fields change."""
        store.update_record("slot-1", skipped_agents=["a"])
        store.update_record("slot-1", withdrawn_agents=["b"])
        record = store.get_record("slot-1")

        assert record.skipped_agents == ["a"]
        assert record.withdrawn_agents == ["b"]

    def test_structured_fields_roundtrip(self, store):
        """Winner and artifact survive the JSON columns."""
        winner = Winner("agent-a", "0x" + "a" * 40, "nonce-1", 1000.0)
        artifact = WinningArtifact("https://cdn/ad.png", "a prompt", "task-9", 1200.0)
        store.update_record(
            "slot-1",
            current_winner=winner,
            winning_artifact=artifact,
            status=AuctionStatus.DISPLAYING_RESULT,
            auction_ended=True,
        )
        record = store.get_record("slot-1")

        assert record.current_winner == winner
        assert record.winning_artifact == artifact
        assert record.status == AuctionStatus.DISPLAYING_RESULT
        assert record.auction_ended is True

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValueError):
            store.update_record("slot-1", not_a_column=1)

    def test_list_slots_by_status(self, store):
        store.update_record("a")
        store.update_record("b", status=AuctionStatus.ENDED)
        assert sorted(store.list_slots()) == ["a", "b"]
        assert store.list_slots(AuctionStatus.ACTIVE) == ["a"]


class TestSettlement:
    """Tests for atomic settlement writes."""

    def test_apply_settlement_appends_entry(self, store):
        """Settlement sets the record fields and appends one entry."""
        entry = store.apply_settlement("slot-1", make_entry("agent-a", 1_000_000), current_bid=1_000_000)
        record = store.get_record("slot-1")

        assert entry.entry_id is not None
        assert record.current_bid == 1_000_000
        assert [e.agent_id for e in record.bid_history] == ["agent-a"]

    def test_displaced_entry_marked_pending(self, store):
        """The displaced winner's entry is flagged in the same write."""
        first = store.apply_settlement("slot-1", make_entry("agent-a", 1_000_000), current_bid=1_000_000)
        store.apply_settlement(
            "slot-1", make_entry("agent-b", 2_000_000), displaced=first, current_bid=2_000_000
        )
        record = store.get_record("slot-1")

        assert first.refund_status == RefundStatus.PENDING
        assert record.bid_history[0].refund_status == RefundStatus.PENDING
        assert record.bid_history[1].refund_status == RefundStatus.NONE

    def test_history_keeps_insertion_order(self, store):
        for i, agent in enumerate(["agent-a", "agent-b", "agent-a"]):
            store.apply_settlement("slot-1", make_entry(agent, (i + 1) * 1_000_000))
        record = store.get_record("slot-1")
        assert [e.amount for e in record.bid_history] == [1_000_000, 2_000_000, 3_000_000]

    def test_set_refund_status(self, store):
        entry = store.apply_settlement("slot-1", make_entry("agent-a", 1_000_000))
        store.set_refund_status(entry.entry_id, RefundStatus.REFUNDED, "0xrefund")
        stored = store.get_record("slot-1").bid_history[0]
        assert stored.refund_status == RefundStatus.REFUNDED
        assert stored.refund_ref == "0xrefund"


class TestReflections:
    """Tests for last-match reflection annotation."""

    def test_reflection_attaches_to_last_entry(self, store):
        """Only the agent's most recent entry is annotated."""
        store.apply_settlement("slot-1", make_entry("agent-a", 1_000_000))
        store.apply_settlement("slot-1", make_entry("agent-b", 2_000_000))
        store.apply_settlement("slot-1", make_entry("agent-a", 3_000_000))

        assert store.attach_reflection("slot-1", "agent-a", "worth it")
        history = store.get_record("slot-1").bid_history

        assert history[0].reflection_text is None
        assert history[1].reflection_text is None
        assert history[2].reflection_text == "worth it"

    def test_reflection_without_bid(self, store):
        store.update_record("slot-1")
        assert not store.attach_reflection("slot-1", "agent-z", "hmm")


class TestFailedRefunds:
    """Tests for the failed refund log."""

    def test_record_and_list(self, store):
        store.record_failed_refund("0x" + "a" * 40, 1_000_000, "rpc down", slot_id="s", agent_id="a")
        rows = store.failed_refunds()
        assert len(rows) == 1
        assert rows[0]["amount"] == 1_000_000
        assert rows[0]["reason"] == "rpc down"


class TestPersistence:
    """Tests for durability across store instances."""

    def test_reopen_sees_data(self):
        """A new adapter over the same file sees committed rows."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir)
            AuctionStore(path).apply_settlement("slot-1", make_entry("agent-a", 5_000_000), current_bid=5_000_000)

            reopened = AuctionStore(path)
            record = reopened.get_record("slot-1")
            assert record.current_bid == 5_000_000
            assert len(record.bid_history) == 1

    def test_adapter_creates_parent_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "nested" / "auction.db"
            SQLiteAdapter(db_path)
            assert db_path.exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
