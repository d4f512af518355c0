"""
Credit ledger engine.

Implements the reservation/settlement protocol over per-account balances and
the append-only credit ledger:

- ``reserve`` debits an estimate before the provider call;
- ``settle`` converts the reservation into the actual charge, refunding or
  charging the difference;
- ``release`` restores a reservation that will never be settled;
- ``grant`` credits an account unconditionally.

Every operation is one atomic repository transaction. Before mutating, the
engine derives the generation's state from all of its ledger entries, which
makes retried and racing calls idempotent: whichever of ``settle``/``release``
commits first wins and the other observes a no-op.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

import math

import structlog

from ai_credit_ledger.config.loader import LedgerConfig, default_config
from ai_credit_ledger.storage.models import Account, AccountTier, EntryKind, LedgerEntry
from ai_credit_ledger.storage.repository import AccountTransaction, LedgerRepository

from .daily_spend import (
    check_daily_spend,
    current_daily_spend,
    effective_limit,
    utc_day_start,
    utc_now,
    window_is_stale,
    with_daily_spend,
)
from .errors import AccountNotFound, DailyLimitExceeded, InsufficientCredits

logger = structlog.get_logger()


class GenerationStatus(Enum):
    """Lifecycle state of one generation, derived from its ledger entries."""
    NONE = "none"
    BYPASSED = "bypassed"
    RESERVED = "reserved"
    SETTLED = "settled"
    RELEASED = "released"


@dataclass(frozen=True)
class GenerationState:
    """Current state of one generation and the entries it was derived from."""
    status: GenerationStatus
    net_delta: int
    reservation: Optional[LedgerEntry] = None
    settlement: Optional[LedgerEntry] = None

    @property
    def reserved_amount(self) -> int:
        return -self.reservation.delta if self.reservation else 0

    @property
    def reserved_cost_usd(self) -> float:
        if self.reservation is None or self.reservation.cost_usd is None:
            return 0.0
        return self.reservation.cost_usd

    @classmethod
    def from_entries(cls, entries: List[LedgerEntry]) -> "GenerationState":
        """Derive the state from every entry of a generation.

        Ordering is not trusted; the presence of each kind decides the state
        and the net delta is summed over all entries.
        """
        reservation = next((e for e in entries if e.kind == EntryKind.RESERVATION), None)
        settlement = next((e for e in entries if e.kind == EntryKind.SETTLEMENT), None)
        has_refund = any(e.kind == EntryKind.REFUND for e in entries)
        has_bypass = any(e.kind == EntryKind.BYPASS_LOG for e in entries)
        net_delta = sum(e.delta for e in entries)

        if settlement is not None:
            status = GenerationStatus.SETTLED
        elif reservation is not None and has_refund:
            status = GenerationStatus.RELEASED
        elif reservation is not None:
            status = GenerationStatus.RESERVED
        elif has_bypass:
            status = GenerationStatus.BYPASSED
        else:
            status = GenerationStatus.NONE

        return cls(
            status=status,
            net_delta=net_delta,
            reservation=reservation,
            settlement=settlement,
        )


@dataclass(frozen=True)
class ReserveResult:
    success: bool
    new_balance: int
    already_reserved: bool = False
    bypassed: bool = False


@dataclass(frozen=True)
class SettleResult:
    """Outcome of a settlement.

    ``charged`` is what the generation finally cost the account. Exactly one
    of ``refunded``/``additional_charged``/``shortfall`` is set when the
    actual amount differed from the reservation.
    """
    success: bool
    new_balance: int
    charged: int = 0
    converted: bool = False
    already_charged: bool = False
    already_released: bool = False
    bypassed: bool = False
    refunded: Optional[int] = None
    additional_charged: Optional[int] = None
    shortfall: Optional[int] = None


@dataclass(frozen=True)
class ReleaseResult:
    success: bool
    new_balance: int
    released: int = 0
    already_released: bool = False


@dataclass(frozen=True)
class GrantResult:
    new_balance: int


@dataclass(frozen=True)
class BypassReport:
    """Unlimited-tier usage recorded for one UTC day."""
    day_start: datetime
    total_cost_usd: float
    request_count: int


def _require_credits(amount: int, name: str, allow_zero: bool = False) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"{name} must be an integer number of credits, received: {amount!r}")
    if amount < 0 or (amount == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ValueError(f"{name} must be {bound}, received: {amount}")


def _require_cost(cost_usd: Optional[float]) -> None:
    if cost_usd is None:
        return
    if isinstance(cost_usd, bool) or not isinstance(cost_usd, (int, float)):
        raise ValueError(f"cost_usd must be a number, received: {cost_usd!r}")
    if not math.isfinite(cost_usd) or cost_usd < 0:
        raise ValueError(f"cost_usd must be a finite number >= 0, received: {cost_usd}")


def _cost_booked_today(state: GenerationState, now: datetime) -> float:
    """Reserved cost still counted in today's spend window (0 if reserved on an earlier day)."""
    if state.reservation is None or state.reservation.created_at < utc_day_start(now):
        return 0.0
    return state.reserved_cost_usd


class LedgerEngine:
    """Reservation and settlement over the credit ledger.

    Args:
        repository: Persistence substrate for accounts and ledger entries
        config: Ledger configuration (built-in defaults when None)
        clock: Returns the current time as an aware UTC datetime
    """

    def __init__(
        self,
        repository: LedgerRepository,
        config: Optional[LedgerConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.config = config or default_config()
        self._clock = clock

    # --- accounts -----------------------------------------------------------

    def ensure_account(self, account_id: str) -> Account:
        """Create the account if absent; otherwise refresh its last-seen time."""
        if not account_id or not account_id.strip():
            raise ValueError("account_id is required and cannot be empty")
        now = self._clock()
        with self.repository.transaction(account_id) as tx:
            if tx.account is None:
                tx.create(Account(
                    account_id=account_id,
                    balance=0,
                    tier=AccountTier.STANDARD,
                    daily_spend=0.0,
                    daily_spend_window_start=None,
                    daily_spend_limit=None,
                    created_at=now,
                    last_seen_at=now,
                ))
            else:
                tx.save(tx.account.with_changes(last_seen_at=now))
            return tx.account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Account snapshot with today's spend (0 after a UTC day rollover)."""
        account = self.repository.get_account(account_id)
        if account is None:
            return None
        now = self._clock()
        if window_is_stale(account, now):
            return account.with_changes(daily_spend=0.0)
        return account

    def daily_limit(self, account: Account) -> float:
        if account.is_unlimited:
            return math.inf
        return effective_limit(account, self.config.daily_spend.default_limit_usd)

    def set_tier(self, account_id: str, tier: AccountTier) -> Account:
        with self.repository.transaction(account_id) as tx:
            account = self._require_account(tx, account_id)
            tx.save(account.with_changes(tier=tier))
        logger.info("account_tier_changed", account_id=account_id, tier=tier.value)
        return tx.account

    def set_daily_limit(self, account_id: str, limit_usd: Optional[float]) -> Account:
        """Override the account's daily spend limit (None restores the default)."""
        if limit_usd is not None and (not math.isfinite(limit_usd) or limit_usd <= 0):
            raise ValueError(f"daily limit must be a positive number, received: {limit_usd}")
        with self.repository.transaction(account_id) as tx:
            account = self._require_account(tx, account_id)
            tx.save(account.with_changes(daily_spend_limit=limit_usd))
        logger.info("daily_limit_changed", account_id=account_id, limit_usd=limit_usd)
        return tx.account

    # --- ledger operations ----------------------------------------------------

    def reserve(
        self,
        account_id: str,
        generation_id: str,
        amount: int,
        model_id: str,
        cost_usd: Optional[float] = None,
        endpoint: Optional[str] = None,
    ) -> ReserveResult:
        """Reserve ``amount`` credits for one generation.

        Safe to retry: a second call for the same generation returns
        ``already_reserved`` without touching the balance. Unlimited accounts
        are not debited; a ``bypass-log`` entry records the usage instead.

        Args:
            account_id: Account to debit
            generation_id: Idempotency key of the metered operation
            amount: Credits to reserve (> 0)
            model_id: Model the operation will use
            cost_usd: Estimated provider cost, counted against the daily limit
            endpoint: Label recorded on bypass-log entries

        Raises:
            AccountNotFound: If the account does not exist
            DailyLimitExceeded: If the cost would exceed today's limit
            InsufficientCredits: If the balance cannot cover ``amount``
        """
        _require_credits(amount, "amount")
        _require_cost(cost_usd)
        now = self._clock()

        with self.repository.transaction(account_id) as tx:
            account = self._require_account(tx, account_id)
            state = GenerationState.from_entries(tx.entries_for(generation_id))

            if state.reservation is not None or state.status == GenerationStatus.BYPASSED:
                logger.info(
                    "reservation_already_exists",
                    account_id=account_id,
                    generation_id=generation_id,
                )
                return ReserveResult(success=True, new_balance=account.balance, already_reserved=True)

            if account.is_unlimited:
                tx.append(LedgerEntry(
                    account_id=account_id,
                    generation_id=generation_id,
                    delta=0,
                    kind=EntryKind.BYPASS_LOG,
                    model_id=model_id,
                    cost_usd=cost_usd,
                    reason=endpoint,
                    created_at=now,
                ))
                logger.info(
                    "reservation_bypassed",
                    account_id=account_id,
                    generation_id=generation_id,
                    model_id=model_id,
                    estimated_credits=amount,
                    estimated_cost_usd=cost_usd,
                    endpoint=endpoint,
                )
                return ReserveResult(success=True, new_balance=account.balance, bypassed=True)

            check = check_daily_spend(
                account, cost_usd, self.config.daily_spend.default_limit_usd, now
            )
            if not check.allowed:
                logger.warning(
                    "daily_limit_exceeded",
                    account_id=account_id,
                    generation_id=generation_id,
                    limit=check.limit,
                    spent=check.spent,
                    cost_usd=cost_usd,
                )
                raise DailyLimitExceeded(
                    limit=check.limit, spent=check.spent, remaining=check.remaining
                )

            if account.balance < amount:
                logger.info(
                    "insufficient_credits",
                    account_id=account_id,
                    generation_id=generation_id,
                    required=amount,
                    available=account.balance,
                )
                raise InsufficientCredits(required=amount, available=account.balance)

            updated = with_daily_spend(account, check.spent + (cost_usd or 0.0), now)
            tx.save(updated.with_changes(balance=account.balance - amount, last_seen_at=now))
            tx.append(LedgerEntry(
                account_id=account_id,
                generation_id=generation_id,
                delta=-amount,
                kind=EntryKind.RESERVATION,
                model_id=model_id,
                cost_usd=cost_usd,
                created_at=now,
            ))
            new_balance = tx.account.balance

        logger.info(
            "credits_reserved",
            account_id=account_id,
            generation_id=generation_id,
            amount=amount,
            new_balance=new_balance,
        )
        return ReserveResult(success=True, new_balance=new_balance)

    def settle(
        self,
        account_id: str,
        generation_id: str,
        reserved_amount: int,
        actual_amount: int,
        model_id: str,
        cost_usd: Optional[float] = None,
    ) -> SettleResult:
        """Charge the actual cost of a generation.

        Converts an outstanding reservation into a settlement, refunding the
        excess or charging the extra. When the account cannot cover the extra,
        only the reserved amount is charged and the difference is reported as
        ``shortfall`` instead of failing the already-completed operation.
        Without a reservation the actual amount is debited directly.

        The reservation recorded in the ledger is authoritative;
        ``reserved_amount`` is the caller's view of it and a mismatch is logged.

        Raises:
            AccountNotFound: If the account does not exist
            InsufficientCredits: On the direct-debit path only
        """
        _require_credits(actual_amount, "actual_amount", allow_zero=True)
        _require_cost(cost_usd)
        now = self._clock()

        with self.repository.transaction(account_id) as tx:
            account = self._require_account(tx, account_id)
            state = GenerationState.from_entries(tx.entries_for(generation_id))

            if state.status == GenerationStatus.SETTLED:
                logger.info("settlement_already_charged", account_id=account_id, generation_id=generation_id)
                return SettleResult(success=True, new_balance=account.balance, already_charged=True)
            if state.status == GenerationStatus.RELEASED:
                logger.info("settlement_after_release", account_id=account_id, generation_id=generation_id)
                return SettleResult(success=True, new_balance=account.balance, already_released=True)
            if state.status == GenerationStatus.BYPASSED or (
                state.status == GenerationStatus.NONE and account.is_unlimited
            ):
                return SettleResult(success=True, new_balance=account.balance, bypassed=True)
            if state.status == GenerationStatus.NONE:
                return self._direct_debit(tx, account, generation_id, actual_amount, model_id, cost_usd, now)

            if reserved_amount != state.reserved_amount:
                logger.warning(
                    "reserved_amount_mismatch",
                    account_id=account_id,
                    generation_id=generation_id,
                    caller_reserved=reserved_amount,
                    ledger_reserved=state.reserved_amount,
                )
            return self._convert_reservation(
                tx, account, state, generation_id, actual_amount, model_id, cost_usd, now
            )

    def release(self, account_id: str, generation_id: str) -> ReleaseResult:
        """Return an outstanding reservation to the account.

        A no-op (``already_released``) when nothing is outstanding: the
        generation was never reserved, was already released, or was settled.
        """
        now = self._clock()

        with self.repository.transaction(account_id) as tx:
            account = self._require_account(tx, account_id)
            state = GenerationState.from_entries(tx.entries_for(generation_id))

            if state.status != GenerationStatus.RESERVED:
                logger.info(
                    "release_noop",
                    account_id=account_id,
                    generation_id=generation_id,
                    status=state.status.value,
                )
                return ReleaseResult(success=True, new_balance=account.balance, already_released=True)

            reserved = state.reserved_amount
            spent = current_daily_spend(account, now) - _cost_booked_today(state, now)
            updated = with_daily_spend(account, spent, now)
            tx.save(updated.with_changes(balance=account.balance + reserved, last_seen_at=now))
            tx.append(LedgerEntry(
                account_id=account_id,
                generation_id=generation_id,
                delta=reserved,
                kind=EntryKind.REFUND,
                model_id=state.reservation.model_id,
                created_at=now,
            ))
            new_balance = tx.account.balance

        logger.info(
            "reservation_released",
            account_id=account_id,
            generation_id=generation_id,
            released=reserved,
            new_balance=new_balance,
        )
        return ReleaseResult(success=True, new_balance=new_balance, released=reserved)

    def grant(
        self,
        account_id: str,
        amount: int,
        reason: str,
    ) -> GrantResult:
        """Credit the account unconditionally (payments, failed sub-step refunds)."""
        _require_credits(amount, "amount")
        if not reason or not reason.strip():
            raise ValueError("reason is required and cannot be empty")
        now = self._clock()

        with self.repository.transaction(account_id) as tx:
            account = self._require_account(tx, account_id)
            tx.save(account.with_changes(balance=account.balance + amount, last_seen_at=now))
            tx.append(LedgerEntry(
                account_id=account_id,
                delta=amount,
                kind=EntryKind.GRANT,
                reason=reason,
                created_at=now,
            ))
            new_balance = tx.account.balance

        logger.info(
            "credits_granted",
            account_id=account_id,
            amount=amount,
            reason=reason,
            new_balance=new_balance,
        )
        return GrantResult(new_balance=new_balance)

    # --- queries --------------------------------------------------------------

    def generation_state(self, account_id: str, generation_id: str) -> GenerationState:
        entries = self.repository.fetch_generation_entries(account_id, generation_id)
        return GenerationState.from_entries(entries)

    def credit_history(self, account_id: str, limit: Optional[int] = None) -> List[LedgerEntry]:
        """Ledger entries of an account, newest first."""
        return self.repository.fetch_account_entries(account_id, limit=limit)

    def bypass_report(self, day: Optional[datetime] = None) -> BypassReport:
        """Totals of unlimited-tier usage for one UTC day (today by default).

        Unlimited accounts skip credit checks, so this audit is how their
        usage (and a possibly compromised unlimited credential) is observed.
        """
        day_start = utc_day_start(day or self._clock())
        entries = self.repository.fetch_entries_by_kind(
            EntryKind.BYPASS_LOG, day_start, day_start + timedelta(days=1)
        )
        return BypassReport(
            day_start=day_start,
            total_cost_usd=round(sum(e.cost_usd or 0.0 for e in entries), 9),
            request_count=len(entries),
        )

    # --- internals ------------------------------------------------------------

    @staticmethod
    def _require_account(tx: AccountTransaction, account_id: str) -> Account:
        if tx.account is None:
            raise AccountNotFound(account_id)
        return tx.account

    def _direct_debit(
        self,
        tx: AccountTransaction,
        account: Account,
        generation_id: str,
        amount: int,
        model_id: str,
        cost_usd: Optional[float],
        now: datetime,
    ) -> SettleResult:
        if account.balance < amount:
            raise InsufficientCredits(required=amount, available=account.balance)

        spent = current_daily_spend(account, now) + (cost_usd or 0.0)
        updated = with_daily_spend(account, spent, now)
        tx.save(updated.with_changes(balance=account.balance - amount, last_seen_at=now))
        tx.append(LedgerEntry(
            account_id=account.account_id,
            generation_id=generation_id,
            delta=-amount,
            kind=EntryKind.SETTLEMENT,
            model_id=model_id,
            cost_usd=cost_usd,
            created_at=now,
        ))
        logger.info(
            "credits_debited",
            account_id=account.account_id,
            generation_id=generation_id,
            amount=amount,
            new_balance=tx.account.balance,
        )
        return SettleResult(success=True, new_balance=tx.account.balance, charged=amount)

    def _convert_reservation(
        self,
        tx: AccountTransaction,
        account: Account,
        state: GenerationState,
        generation_id: str,
        actual_amount: int,
        model_id: str,
        cost_usd: Optional[float],
        now: datetime,
    ) -> SettleResult:
        reserved = state.reserved_amount
        actual_cost = cost_usd if cost_usd is not None else state.reserved_cost_usd
        difference = reserved - actual_amount

        def record(charge: int, charge_cost: Optional[float]) -> None:
            tx.append(LedgerEntry(
                account_id=account.account_id,
                generation_id=generation_id,
                delta=-charge,
                kind=EntryKind.SETTLEMENT,
                model_id=model_id,
                cost_usd=charge_cost,
                created_at=now,
            ))
            tx.append(LedgerEntry(
                account_id=account.account_id,
                generation_id=generation_id,
                delta=reserved,
                kind=EntryKind.REFUND,
                model_id=model_id,
                created_at=now,
            ))

        if difference < 0 and account.balance < -difference:
            # Reserved amount already covers part of the cost; never go negative
            record(reserved, state.reservation.cost_usd)
            tx.save(account.with_changes(last_seen_at=now))
            logger.warning(
                "settlement_shortfall",
                account_id=account.account_id,
                generation_id=generation_id,
                reserved=reserved,
                actual=actual_amount,
                shortfall=-difference,
            )
            return SettleResult(
                success=True,
                new_balance=account.balance,
                charged=reserved,
                converted=True,
                shortfall=-difference,
            )

        record(actual_amount, actual_cost)
        spent = current_daily_spend(account, now) + actual_cost - _cost_booked_today(state, now)
        updated = with_daily_spend(account, spent, now)
        tx.save(updated.with_changes(balance=account.balance + difference, last_seen_at=now))
        new_balance = tx.account.balance

        logger.info(
            "reservation_settled",
            account_id=account.account_id,
            generation_id=generation_id,
            reserved=reserved,
            actual=actual_amount,
            new_balance=new_balance,
        )
        return SettleResult(
            success=True,
            new_balance=new_balance,
            charged=actual_amount,
            converted=True,
            refunded=difference if difference > 0 else None,
            additional_charged=-difference if difference < 0 else None,
        )
