"""
Repository pattern for data access.

Provides the persistence substrate the ledger engine relies on: an atomic
read-modify-write of one account record together with appends to the
credit ledger, plus read-only ledger queries.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import structlog

from .db import DEFAULT_DB_PATH, get_connection
from .models import Account, AccountTier, EntryKind, LedgerEntry

logger = structlog.get_logger()

_ACCOUNT_COLUMNS = """
    account_id, balance, tier, daily_spend, daily_spend_window_start,
    daily_spend_limit, created_at, last_seen_at
"""

_ENTRY_COLUMNS = """
    account_id, generation_id, delta, kind, model_id, cost_usd, reason,
    created_at
"""


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        account_id=row["account_id"],
        balance=row["balance"],
        tier=AccountTier(row["tier"]),
        daily_spend=row["daily_spend"],
        daily_spend_window_start=_parse_ts(row["daily_spend_window_start"]),
        daily_spend_limit=row["daily_spend_limit"],
        created_at=_parse_ts(row["created_at"]),
        last_seen_at=_parse_ts(row["last_seen_at"]),
    )


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        account_id=row["account_id"],
        generation_id=row["generation_id"],
        delta=row["delta"],
        kind=EntryKind(row["kind"]),
        model_id=row["model_id"],
        cost_usd=row["cost_usd"],
        reason=row["reason"],
        created_at=_parse_ts(row["created_at"]),
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the account and credit ledger tables if they don't exist.

    The ledger is append-only: no UPDATE or DELETE is ever issued against
    ``credit_ledger``. Partial unique indexes guarantee that one generation
    can hold at most one reservation and at most one settlement.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS accounts (
                account_id TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                tier TEXT NOT NULL DEFAULT 'standard',
                daily_spend REAL NOT NULL DEFAULT 0,
                daily_spend_window_start TEXT,
                daily_spend_limit REAL,
                created_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS credit_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id TEXT NOT NULL REFERENCES accounts (account_id),
                generation_id TEXT,
                delta INTEGER NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN (
                    'reservation', 'settlement', 'refund', 'grant', 'bypass-log'
                )),
                model_id TEXT,
                cost_usd REAL,
                reason TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_ledger_account
                ON credit_ledger (account_id, id);

            CREATE INDEX IF NOT EXISTS idx_ledger_generation
                ON credit_ledger (generation_id, account_id);

            CREATE INDEX IF NOT EXISTS idx_ledger_kind_created
                ON credit_ledger (kind, created_at);

            CREATE UNIQUE INDEX IF NOT EXISTS uq_ledger_one_reservation
                ON credit_ledger (account_id, generation_id)
                WHERE kind = 'reservation';

            CREATE UNIQUE INDEX IF NOT EXISTS uq_ledger_one_settlement
                ON credit_ledger (account_id, generation_id)
                WHERE kind = 'settlement';
        """)
    finally:
        conn.close()


class AccountTransaction:
    """Unit of work over one account record and its ledger entries.

    Only valid inside :meth:`LedgerRepository.transaction`. Reads see every
    entry committed before the transaction started; writes become visible
    atomically on commit.
    """

    def __init__(self, conn: sqlite3.Connection, account: Optional[Account]):
        self._conn = conn
        self.account = account

    def entries_for(self, generation_id: str) -> List[LedgerEntry]:
        """All ledger entries recorded for a generation on this account."""
        cursor = self._conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM credit_ledger "
            "WHERE generation_id = ? AND account_id = ? ORDER BY id",
            (generation_id, self.account.account_id),
        )
        return [_row_to_entry(row) for row in cursor.fetchall()]

    def append(self, entry: LedgerEntry) -> None:
        """Append one entry to the ledger."""
        self._conn.execute(
            f"INSERT INTO credit_ledger ({_ENTRY_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.account_id,
                entry.generation_id,
                entry.delta,
                entry.kind.value,
                entry.model_id,
                entry.cost_usd,
                entry.reason,
                _format_ts(entry.created_at),
            ),
        )

    def create(self, account: Account) -> None:
        """Insert a new account record (only when ``self.account`` is None)."""
        self._conn.execute(
            f"INSERT INTO accounts ({_ACCOUNT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                account.account_id,
                account.balance,
                account.tier.value,
                account.daily_spend,
                _format_ts(account.daily_spend_window_start),
                account.daily_spend_limit,
                _format_ts(account.created_at),
                _format_ts(account.last_seen_at),
            ),
        )
        logger.info("account_created", account_id=account.account_id)
        self.account = account

    def save(self, account: Account) -> None:
        """Write back the mutable fields of the account record."""
        self._conn.execute(
            """
            UPDATE accounts
               SET balance = ?, tier = ?, daily_spend = ?,
                   daily_spend_window_start = ?, daily_spend_limit = ?,
                   last_seen_at = ?
             WHERE account_id = ?
            """,
            (
                account.balance,
                account.tier.value,
                account.daily_spend,
                _format_ts(account.daily_spend_window_start),
                account.daily_spend_limit,
                _format_ts(account.last_seen_at),
                account.account_id,
            ),
        )
        self.account = account


class LedgerRepository:
    """Repository for accounts and the append-only credit ledger.

    Every mutating call opens its own connection and runs in a single
    ``BEGIN IMMEDIATE`` transaction, which serializes writers and makes the
    read-modify-write of an account atomic.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        initialize_schema(self.db_path)

    @contextmanager
    def transaction(self, account_id: str) -> Iterator[AccountTransaction]:
        """Open an atomic read-modify-write transaction on one account.

        The yielded transaction's ``account`` is ``None`` when the account
        does not exist. Any exception raised inside the block rolls back
        every write and is re-raised.

        Args:
            account_id: Account to lock and load
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = ?",
                    (account_id,),
                ).fetchone()
                account = _row_to_account(row) if row else None
                yield AccountTransaction(conn, account)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def get_account(self, account_id: str) -> Optional[Account]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = ?",
                (account_id,),
            ).fetchone()
            return _row_to_account(row) if row else None
        finally:
            conn.close()

    def fetch_generation_entries(
        self,
        account_id: str,
        generation_id: str
    ) -> List[LedgerEntry]:
        """Fetch the entries of one generation in append order."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM credit_ledger "
                "WHERE generation_id = ? AND account_id = ? ORDER BY id",
                (generation_id, account_id),
            )
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def fetch_account_entries(
        self,
        account_id: str,
        limit: Optional[int] = None
    ) -> List[LedgerEntry]:
        """Fetch ledger entries for an account, newest first.

        Args:
            account_id: Account to read
            limit: Maximum number of entries to return (all when None)

        Returns:
            List of ledger entries in reverse append order
        """
        conn = get_connection(self.db_path)
        try:
            query = (
                f"SELECT {_ENTRY_COLUMNS} FROM credit_ledger "
                "WHERE account_id = ? ORDER BY id DESC"
            )
            params: list = [account_id]
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)
            cursor = conn.execute(query, params)
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def fetch_entries_by_kind(
        self,
        kind: EntryKind,
        since: datetime,
        until: datetime
    ) -> List[LedgerEntry]:
        """Fetch entries of one kind created in ``[since, until)``."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM credit_ledger "
                "WHERE kind = ? AND created_at >= ? AND created_at < ? "
                "ORDER BY id",
                (kind.value, _format_ts(since), _format_ts(until)),
            )
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()
