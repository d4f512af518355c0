"""
Error taxonomy for credit operations.

Every rejection is raised before any balance or ledger mutation happens.
Idempotent no-ops (already settled, already released) are not errors; they
are reported as flags on the result objects of the ledger engine.
"""

from typing import Optional


class CreditLedgerError(Exception):
    """Base class for all credit ledger failures."""

    # Suggested HTTP status for callers exposing the ledger over HTTP
    status_code = 500

    def to_dict(self) -> dict:
        return {"error": str(self)}


class InsufficientCredits(CreditLedgerError):
    """The account cannot cover the requested amount."""

    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__("Insufficient credits")
        self.required = required
        self.available = available

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "required": self.required,
            "available": self.available,
        }


class DailyLimitExceeded(CreditLedgerError):
    """The operation would push today's spend over the account's limit."""

    status_code = 429

    def __init__(self, limit: float, spent: float, remaining: float):
        super().__init__("Daily spending limit exceeded")
        self.limit = limit
        self.spent = spent
        self.remaining = remaining

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "dailyLimit": self.limit,
            "dailySpent": self.spent,
            "remaining": self.remaining,
        }


class AccountNotFound(CreditLedgerError):
    status_code = 404

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class ModelUnavailable(CreditLedgerError):
    """The pricing oracle has no price for the model; it is never guessed."""

    status_code = 400

    def __init__(self, model_id: str):
        super().__init__("Model not available")
        self.model_id = model_id

    def to_dict(self) -> dict:
        return {"error": str(self), "model": self.model_id}


class ProviderError(CreditLedgerError):
    """The upstream chat or image provider failed or returned no output."""

    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status
