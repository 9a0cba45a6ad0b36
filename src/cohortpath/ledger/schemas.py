"""Result models returned by the coin ledger."""

from __future__ import annotations

from pydantic import BaseModel, Field


class BalanceAudit(BaseModel):
    """Stored balance compared against the figures derived from the ledger."""

    user_id: int
    stored_total: int
    stored_earned: int
    stored_spent: int
    ledger_earned: int
    ledger_spent: int
    drift: dict[str, int] = Field(default_factory=dict)

    @property
    def ledger_total(self) -> int:
        return self.ledger_earned - self.ledger_spent

    @property
    def consistent(self) -> bool:
        return not self.drift


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    total_balance: int
    lifetime_earned: int


class LedgerStatistics(BaseModel):
    total_coins_in_circulation: int
    total_coins_earned: int
    total_coins_spent: int
    total_transactions: int
    active_users_with_coins: int
    top_earners: list[LeaderboardEntry]
