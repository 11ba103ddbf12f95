"""
User Directory - Participant identities and authoritative budgets.

The engine reads budgets for display and validation, and debits the
winner exactly once per settled item. Wins are also written to the
directory's ownership ledger so every settlement path records them.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Protocol

from gavel.core.errors import NotFound, ValidationError
from gavel.utils.logger import get_logger

logger = get_logger("directory")


@dataclass(frozen=True)
class Identity:
    user_id: str
    display_name: str


@dataclass(frozen=True)
class OwnershipRecord:
    """An item won by a user in a given session."""
    session_id: str
    item_id: str
    amount: int
    won_at: float


class UserDirectory(Protocol):
    """What the engine needs from a user directory."""

    def get_identity(self, user_id: str) -> Identity:
        ...

    def get_budget(self, user_id: str) -> int:
        ...

    def debit(self, user_id: str, amount: int) -> bool:
        """Debit amount; returns False (no change) on insufficient funds."""
        ...

    def credit(self, user_id: str, amount: int) -> None:
        ...

    def record_win(self, user_id: str, record: OwnershipRecord) -> None:
        ...

    def remove_win(self, user_id: str, session_id: str, item_id: str) -> None:
        ...


@dataclass
class UserAccount:
    user_id: str
    display_name: str
    budget: int
    wins: List[OwnershipRecord] = field(default_factory=list)


class InMemoryDirectory:
    """Directory held in memory. Budgets never go below zero."""

    def __init__(self):
        self._accounts: Dict[str, UserAccount] = {}

    def register(self, user_id: str, display_name: str = "", budget: int = 1_000_000) -> UserAccount:
        if not user_id:
            raise ValidationError("user_id must not be empty")
        if budget < 0:
            raise ValidationError(f"budget must be >= 0, got {budget}")
        account = UserAccount(user_id, display_name or user_id, budget)
        self._accounts[user_id] = account
        return account

    def _account(self, user_id: str) -> UserAccount:
        try:
            return self._accounts[user_id]
        except KeyError:
            raise NotFound(f"User {user_id} not found") from None

    def get_identity(self, user_id: str) -> Identity:
        account = self._account(user_id)
        return Identity(account.user_id, account.display_name)

    def get_budget(self, user_id: str) -> int:
        return self._account(user_id).budget

    def debit(self, user_id: str, amount: int) -> bool:
        account = self._account(user_id)
        if amount < 0:
            raise ValidationError(f"debit amount must be >= 0, got {amount}")
        if account.budget < amount:
            logger.warning(f"Debit of {amount} refused for {user_id}: budget {account.budget}")
            return False
        account.budget -= amount
        return True

    def credit(self, user_id: str, amount: int) -> None:
        self._account(user_id).budget += amount

    def record_win(self, user_id: str, record: OwnershipRecord) -> None:
        self._account(user_id).wins.append(record)

    def remove_win(self, user_id: str, session_id: str, item_id: str) -> None:
        account = self._account(user_id)
        account.wins = [
            w for w in account.wins
            if not (w.session_id == session_id and w.item_id == item_id)
        ]

    def get_wins(self, user_id: str) -> List[OwnershipRecord]:
        return list(self._account(user_id).wins)

