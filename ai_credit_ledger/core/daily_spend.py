"""
Daily-spend gate.

Caps how much provider cost (in USD) a single account can incur per UTC
calendar day, independently of its credit balance. The counter is reset
lazily: a stale window is treated as zero spend and the new window start is
persisted together with the next reservation, so no background job is needed.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ai_credit_ledger.storage.models import Account


@dataclass(frozen=True)
class DailySpendCheck:
    """Outcome of checking one reservation against the daily limit."""
    allowed: bool
    spent: float
    limit: float
    remaining: float


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_day_start(now: datetime) -> datetime:
    """Midnight (UTC) of the day containing ``now``."""
    return now.astimezone(timezone.utc).replace(
        hour=0, minute=0, second=0, microsecond=0
    )


def window_is_stale(account: Account, now: datetime) -> bool:
    """True when the stored spend belongs to an earlier UTC day."""
    window_start = account.daily_spend_window_start
    return window_start is None or window_start < utc_day_start(now)


def current_daily_spend(account: Account, now: datetime) -> float:
    """Spend counted against today's window (0 after a UTC day rollover)."""
    return 0.0 if window_is_stale(account, now) else account.daily_spend


def effective_limit(account: Account, default_limit: float) -> float:
    if account.daily_spend_limit is not None:
        return account.daily_spend_limit
    return default_limit


def check_daily_spend(
    account: Account,
    cost_usd: Optional[float],
    default_limit: float,
    now: datetime,
) -> DailySpendCheck:
    """Check whether ``cost_usd`` fits in the account's remaining daily budget.

    Unlimited accounts are always allowed and report an infinite limit.

    Args:
        account: Account snapshot read inside the current transaction
        cost_usd: Estimated provider cost of the operation (None counts as 0)
        default_limit: Configured limit for accounts without an override
        now: Current time

    Returns:
        DailySpendCheck with the spend and limit used for the decision
    """
    if account.is_unlimited:
        return DailySpendCheck(
            allowed=True,
            spent=0.0,
            limit=math.inf,
            remaining=math.inf,
        )

    spent = current_daily_spend(account, now)
    limit = effective_limit(account, default_limit)
    remaining = max(0.0, limit - spent)

    return DailySpendCheck(
        allowed=spent + (cost_usd or 0.0) <= limit,
        spent=spent,
        limit=limit,
        remaining=remaining,
    )


def with_daily_spend(account: Account, spent: float, now: datetime) -> Account:
    """Return the account with today's spend set, clamped at zero.

    Always stamps the window with today's UTC midnight, which persists a
    lazy reset in the same write that records the new spend.
    """
    return account.with_changes(
        daily_spend=max(0.0, round(spent, 9)),
        daily_spend_window_start=utc_day_start(now),
    )
