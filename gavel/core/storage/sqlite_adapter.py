import json
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from gavel.utils.logger import get_logger

logger = get_logger("storage.sqlite")


class SQLiteAdapter:
    """
    SQLite backend for session persistence.

    Provides:
    1. Session documents (one JSON row per session).
    2. Completed entries, unique per (session, item), so a settled
       item can never be recorded twice even across restarts.
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
                check_same_thread=False
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
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_session_status ON sessions(status);")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS completed_entries (
                    session_id TEXT NOT NULL,
                    item_id TEXT NOT NULL,
                    winner_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    settled_at REAL NOT NULL,
                    PRIMARY KEY (session_id, item_id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_entry_winner ON completed_entries(session_id, winner_id);"
            )

    # =========================================================================
    # Session Operations
    # =========================================================================

    def save_session(
        self,
        session_id: str,
        status: str,
        data: dict,
        updated_at: float,
        new_entries: List[Tuple[str, str, int, float]],
    ):
        """
        Atomically write a session document and its new completed entries.

        Args:
            session_id: Session identifier
            status: Status name (indexed for listing)
            data: Session document
            updated_at: Commit timestamp
            new_entries: (item_id, winner_id, amount, settled_at) to insert

        Raises:
            sqlite3.IntegrityError: an entry for the same item already exists
        """
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO sessions (session_id, status, data, updated_at) VALUES (?, ?, ?, ?)",
                (session_id, status, json.dumps(data), updated_at)
            )
            conn.executemany(
                "INSERT INTO completed_entries (session_id, item_id, winner_id, amount, settled_at) "
                "VALUES (?, ?, ?, ?, ?)",
                [(session_id, *entry) for entry in new_entries]
            )

    def get_session(self, session_id: str) -> Optional[dict]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT data FROM sessions WHERE session_id = ?", (session_id,))
        row = cursor.fetchone()
        return json.loads(row['data']) if row else None

    def get_all_sessions(self) -> List[dict]:
        """Get every session document, oldest update first."""
        conn = self._get_conn()
        cursor = conn.execute("SELECT data FROM sessions ORDER BY updated_at ASC")
        return [json.loads(row['data']) for row in cursor]

    def delete_session(self, session_id: str):
        conn = self._get_conn()
        with conn:
            conn.execute("DELETE FROM completed_entries WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))

    # =========================================================================
    # Completed Entry Operations
    # =========================================================================

    def get_entries(self, session_id: str) -> List[Tuple[str, str, int, float]]:
        """Get (item_id, winner_id, amount, settled_at) in settlement order."""
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT item_id, winner_id, amount, settled_at FROM completed_entries "
            "WHERE session_id = ? ORDER BY settled_at ASC, rowid ASC",
            (session_id,)
        )
        return [(row['item_id'], row['winner_id'], row['amount'], row['settled_at']) for row in cursor]

    def get_spent(self, session_id: str, winner_id: str) -> int:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM completed_entries "
            "WHERE session_id = ? AND winner_id = ?",
            (session_id, winner_id)
        )
        return cursor.fetchone()['total']

    def close(self):
        """Close this thread's connection."""
        conn = getattr(self._conn_local, "conn", None)
        if conn is not None:
            conn.close()
            del self._conn_local.conn
