import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from adauction.utils.logger import get_logger

logger = get_logger("storage.sqlite")


# Columns of auction_records that callers may set through partial updates
RECORD_COLUMNS = (
    "current_bid",
    "current_winner",
    "status",
    "auction_start_time",
    "auction_end_time",
    "withdrawn_agents",
    "skipped_agents",
    "auction_ended",
    "auction_end_reason",
    "winner",
    "winning_artifact",
)

# JSON-encoded columns (objects and agent lists)
JSON_COLUMNS = ("current_winner", "withdrawn_agents", "skipped_agents", "winning_artifact")

BID_COLUMNS = (
    "agent_id",
    "payer_address",
    "amount",
    "timestamp",
    "settlement_ref",
    "thinking",
    "strategy_tag",
    "reasoning_text",
    "reflection_text",
    "refund_status",
    "refund_ref",
)


class SQLiteAdapter:
    """
    SQLite backend for auction persistence.

    Provides:
    1. auction_records: one row per slot, partially updatable (upsert).
    2. bid_history: append-only settled bids, ordered by row id.
    3. failed_refunds: refunds that exhausted their retry, for operators.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn_local = threading.local()

        if not db_path.parent.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False,
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auction_records (
                    slot_id TEXT PRIMARY KEY,
                    current_bid INTEGER,
                    current_winner TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    auction_start_time REAL,
                    auction_end_time REAL,
                    withdrawn_agents TEXT NOT NULL DEFAULT '[]',
                    skipped_agents TEXT NOT NULL DEFAULT '[]',
                    auction_ended INTEGER NOT NULL DEFAULT 0,
                    auction_end_reason TEXT,
                    winner TEXT,
                    winning_artifact TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_record_status ON auction_records(status);")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS bid_history (
                    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    slot_id TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    payer_address TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    timestamp REAL NOT NULL,
                    settlement_ref TEXT NOT NULL,
                    thinking TEXT,
                    strategy_tag TEXT,
                    reasoning_text TEXT,
                    reflection_text TEXT,
                    refund_status TEXT NOT NULL DEFAULT 'none',
                    refund_ref TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bid_slot ON bid_history(slot_id, entry_id);")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS failed_refunds (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    slot_id TEXT,
                    agent_id TEXT,
                    payout_address TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    failed_at REAL NOT NULL
                )
            """)

    # =========================================================================
    # Encoding
    # =========================================================================

    @staticmethod
    def _encode(fields: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(fields) - set(RECORD_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown auction record fields: {sorted(unknown)}")

        encoded = {}
        for key, value in fields.items():
            if key in JSON_COLUMNS:
                default = [] if key.endswith("_agents") else None
                encoded[key] = json.dumps(value if value is not None else default)
            elif key == "auction_ended":
                encoded[key] = 1 if value else 0
            else:
                encoded[key] = value
        return encoded

    @staticmethod
    def decode_record(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        for key in JSON_COLUMNS:
            data[key] = json.loads(data[key]) if data[key] is not None else None
        data["auction_ended"] = bool(data["auction_ended"])
        return data

    # =========================================================================
    # Auction Records
    # =========================================================================

    def _upsert_record(self, conn: sqlite3.Connection, slot_id: str, fields: Dict[str, Any], now: float):
        encoded = self._encode(fields)
        columns = ["slot_id", *encoded.keys(), "created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in columns)
        assignments = ", ".join(f"{col} = excluded.{col}" for col in [*encoded.keys(), "updated_at"])
        conn.execute(
            f"INSERT INTO auction_records ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(slot_id) DO UPDATE SET {assignments}",
            (slot_id, *encoded.values(), now, now),
        )

    def upsert_record(self, slot_id: str, fields: Dict[str, Any], now: float):
        """Create the slot's record if missing, then set the given columns."""
        conn = self._get_conn()
        with conn:
            self._upsert_record(conn, slot_id, fields, now)

    def insert_record(self, slot_id: str, now: float) -> bool:
        """Create an empty record for the slot. Existing records are left untouched."""
        conn = self._get_conn()
        with conn:
            cursor = conn.execute(
                "INSERT INTO auction_records (slot_id, created_at, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(slot_id) DO NOTHING",
                (slot_id, now, now),
            )
        return cursor.rowcount == 1

    def get_record(self, slot_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM auction_records WHERE slot_id = ?", (slot_id,))
        row = cursor.fetchone()
        return self.decode_record(row) if row else None

    def get_slot_ids(self, status: Optional[str] = None) -> List[str]:
        conn = self._get_conn()
        if status is None:
            cursor = conn.execute("SELECT slot_id FROM auction_records ORDER BY created_at ASC")
        else:
            cursor = conn.execute(
                "SELECT slot_id FROM auction_records WHERE status = ? ORDER BY created_at ASC",
                (status,),
            )
        return [row["slot_id"] for row in cursor]

    # =========================================================================
    # Bid History
    # =========================================================================

    def get_bids(self, slot_id: str) -> List[Dict[str, Any]]:
        """All bid rows for a slot in insertion order."""
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT * FROM bid_history WHERE slot_id = ? ORDER BY entry_id ASC", (slot_id,)
        )
        return [dict(row) for row in cursor]

    def _insert_bid(self, conn: sqlite3.Connection, slot_id: str, bid: Dict[str, Any]) -> int:
        values = [bid.get(col) for col in BID_COLUMNS]
        cursor = conn.execute(
            f"INSERT INTO bid_history (slot_id, {', '.join(BID_COLUMNS)}) "
            f"VALUES (?, {', '.join('?' for _ in BID_COLUMNS)})",
            (slot_id, *values),
        )
        return cursor.lastrowid

    def update_bid(self, entry_id: int, fields: Dict[str, Any]):
        unknown = set(fields) - set(BID_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown bid fields: {sorted(unknown)}")
        assignments = ", ".join(f"{col} = ?" for col in fields)
        conn = self._get_conn()
        with conn:
            conn.execute(
                f"UPDATE bid_history SET {assignments} WHERE entry_id = ?",
                (*fields.values(), entry_id),
            )

    def set_last_reflection(self, slot_id: str, agent_id: str, reflection: str) -> Optional[int]:
        """
        Attach a reflection to the agent's most recent bid.

        Returns:
            entry_id of the annotated bid, or None if the agent never bid
        """
        conn = self._get_conn()
        with conn:
            row = conn.execute(
                "SELECT MAX(entry_id) AS entry_id FROM bid_history WHERE slot_id = ? AND agent_id = ?",
                (slot_id, agent_id),
            ).fetchone()
            if row is None or row["entry_id"] is None:
                return None
            conn.execute(
                "UPDATE bid_history SET reflection_text = ? WHERE entry_id = ?",
                (reflection, row["entry_id"]),
            )
            return row["entry_id"]

    # =========================================================================
    # Settlement
    # =========================================================================

    def apply_settlement(
        self,
        slot_id: str,
        record_fields: Dict[str, Any],
        bid: Dict[str, Any],
        displaced_entry_id: Optional[int],
        now: float,
    ) -> int:
        """
        Atomically record an accepted bid.

        Args:
            slot_id: Slot being bid on
            record_fields: New record columns (current bid, winner, times)
            bid: Bid history row to append
            displaced_entry_id: Previous winner's entry, flagged refund-pending
            now: Update timestamp

        Returns:
            entry_id of the appended bid
        """
        conn = self._get_conn()
        with conn:
            self._upsert_record(conn, slot_id, record_fields, now)
            entry_id = self._insert_bid(conn, slot_id, bid)
            if displaced_entry_id is not None:
                conn.execute(
                    "UPDATE bid_history SET refund_status = 'pending' WHERE entry_id = ?",
                    (displaced_entry_id,),
                )
        return entry_id

    # =========================================================================
    # Failed Refunds
    # =========================================================================

    def save_failed_refund(
        self,
        slot_id: Optional[str],
        agent_id: Optional[str],
        payout_address: str,
        amount: int,
        reason: str,
        failed_at: float,
    ):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT INTO failed_refunds (slot_id, agent_id, payout_address, amount, reason, failed_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (slot_id, agent_id, payout_address, amount, reason, failed_at),
            )

    def get_failed_refunds(self) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM failed_refunds ORDER BY id ASC")
        return [dict(row) for row in cursor]
