"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Session documents
- Completed entries (one per settled item)
"""

from gavel.core.storage.sqlite_adapter import SQLiteAdapter
from gavel.core.storage.storage_manager import SessionStore, StorageManager

__all__ = ["SQLiteAdapter", "SessionStore", "StorageManager"]
