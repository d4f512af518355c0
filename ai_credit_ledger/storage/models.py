"""
Data models for storage layer.

Defines the account record and the append-only credit ledger entries.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional


class AccountTier(Enum):
    """Billing tier of an account."""
    STANDARD = "standard"
    UNLIMITED = "unlimited"  # Bypasses reservations and the daily-spend gate


class EntryKind(Enum):
    """Kinds of credit ledger entries."""
    RESERVATION = "reservation"
    SETTLEMENT = "settlement"
    REFUND = "refund"
    GRANT = "grant"
    BYPASS_LOG = "bypass-log"


@dataclass(frozen=True)
class Account:
    """Snapshot of one account record.

    Accounts are mutated only by the ledger engine, always inside a single
    repository transaction together with the ledger entries that explain
    the change.
    """
    account_id: str
    balance: int
    tier: AccountTier
    daily_spend: float
    daily_spend_window_start: Optional[datetime]
    daily_spend_limit: Optional[float]
    created_at: datetime
    last_seen_at: datetime

    @property
    def is_unlimited(self) -> bool:
        return self.tier == AccountTier.UNLIMITED

    def with_changes(self, **changes) -> "Account":
        """Return a copy of the account with the given fields replaced."""
        return replace(self, **changes)


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable credit ledger entry.

    Append-only: entries are never updated or deleted. The entries sharing a
    ``generation_id`` describe the whole lifecycle of one metered operation.
    """
    account_id: str
    delta: int
    kind: EntryKind
    created_at: datetime
    generation_id: Optional[str] = None
    model_id: Optional[str] = None
    cost_usd: Optional[float] = None
    reason: Optional[str] = None
