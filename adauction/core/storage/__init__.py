"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Per-slot auction records
- Append-only bid history
- Unrecovered refund log
"""

from adauction.core.storage.sqlite_adapter import SQLiteAdapter
from adauction.core.storage.storage_manager import AuctionStore

__all__ = ["SQLiteAdapter", "AuctionStore"]
