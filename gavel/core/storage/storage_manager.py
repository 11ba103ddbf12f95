from pathlib import Path
import sqlite3
from typing import List, Optional, Protocol

from gavel.core.errors import FatalError
from gavel.core.session.models import Session
from gavel.core.storage.sqlite_adapter import SQLiteAdapter
from gavel.utils.logger import get_logger

logger = get_logger("storage.manager")


class SessionStore(Protocol):
    """What the engine needs to persist sessions durably."""

    def save_session(self, session: Session, previous: Optional[Session] = None) -> None:
        ...

    def delete_session(self, session_id: str) -> None:
        ...

    def load_sessions(self) -> List[Session]:
        ...


class StorageManager:
    """
    Manages persistent storage for the engine.

    Coordinates session persistence using the SQLite adapter.
    Handles:
    - Session documents (written whole on every commit)
    - Completed entries (append-only, one per settled item)
    """

    def __init__(self, data_dir: Path, db_name: str = "gavel.db"):
        self.data_dir = data_dir
        self.db_path = data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"StorageManager initialized at {self.db_path}")

    # =========================================================================
    # Sessions
    # =========================================================================

    def save_session(self, session: Session, previous: Optional[Session] = None) -> None:
        """
        Persist a committed session.

        Completed entries not present in previous are inserted in the
        same transaction as the session document.

        Raises:
            FatalError: database write failed (nothing persisted)
        """
        known = {e.item_id for e in previous.completed} if previous else set()
        new_entries = [
            (e.item_id, e.winner_id, e.amount, e.settled_at)
            for e in session.completed
            if e.item_id not in known
        ]
        try:
            self.adapter.save_session(
                session.session_id,
                session.status.name.lower(),
                session.to_dict(),
                session.updated_at,
                new_entries,
            )
        except sqlite3.Error as e:
            raise FatalError(f"Persisting session {session.session_id} failed: {e}", e) from e

    def get_session(self, session_id: str) -> Optional[Session]:
        data = self.adapter.get_session(session_id)
        return Session.from_dict(data) if data else None

    def load_sessions(self) -> List[Session]:
        """Load every persisted session."""
        sessions = []
        for data in self.adapter.get_all_sessions():
            try:
                sessions.append(Session.from_dict(data))
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Skipping unreadable session {data.get('session_id')}: {e}")
        return sessions

    def delete_session(self, session_id: str) -> None:
        try:
            self.adapter.delete_session(session_id)
        except sqlite3.Error as e:
            raise FatalError(f"Deleting session {session_id} failed: {e}", e) from e

    # =========================================================================
    # Completed Entries
    # =========================================================================

    def get_entries(self, session_id: str) -> List[tuple]:
        return self.adapter.get_entries(session_id)

    def get_spent(self, session_id: str, user_id: str) -> int:
        return self.adapter.get_spent(session_id, user_id)

    def close(self) -> None:
        self.adapter.close()
