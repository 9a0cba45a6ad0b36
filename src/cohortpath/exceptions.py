"""Typed business outcomes raised by the progression engine.

Every error here is an expected, recoverable result for the caller. They carry
an ``error_code`` and ``status_code`` so a presentation layer can map them to
responses without knowing the engine internals.
"""

from __future__ import annotations

from typing import Any


class ProgressionError(Exception):
    """Base class for progression business-rule failures."""

    error_code = "progression_failed"
    status_code = 422

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message}


class PreconditionError(ProgressionError):
    """Action attempted against a locked week or an unmet unit gate."""

    error_code = "precondition_failed"


class InsufficientBalanceError(ProgressionError):
    """Spend exceeds the user's coin balance."""

    error_code = "insufficient_balance"

    def __init__(self, user_id: int, requested: int, available: int) -> None:
        super().__init__(f"Insufficient balance: requested {requested}, available {available}")
        self.user_id = user_id
        self.requested = requested
        self.available = available


class WeekProgressionException(ProgressionError):
    """Unlock attempted while the week's rules are not satisfied."""

    error_code = "week_progression_failed"

    def __init__(self, week_number: int, unmet: list[str] | None = None) -> None:
        super().__init__(f"Cannot unlock week {week_number}. Requirements not met.")
        self.week_number = week_number
        self.unmet = unmet or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["week_number"] = self.week_number
        data["unmet"] = self.unmet
        return data


class LedgerIntegrityError(ProgressionError):
    """Stored balance disagrees with the transaction history."""

    error_code = "ledger_integrity"
    status_code = 500

    def __init__(self, user_id: int, drift: dict[str, int]) -> None:
        details = ", ".join(f"{field}={delta:+d}" for field, delta in sorted(drift.items()))
        super().__init__(f"Coin balance for user {user_id} drifted from its ledger ({details})")
        self.user_id = user_id
        self.drift = drift
