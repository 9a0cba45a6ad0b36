"""Coin ledger: append-only transactions plus the derived per-user balance.

Balance columns are only ever moved by arithmetic UPDATEs issued here, so the
stored ``total_balance`` always equals ``lifetime_earned - lifetime_spent``.
Spending is a single conditional UPDATE guarded by ``total_balance >= amount``;
two concurrent spends can never push a balance below zero.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cohortpath.clock import Clock, utcnow
from cohortpath.config import get_settings
from cohortpath.db.models import CoinTransaction, UserCoinBalance, UserProgress
from cohortpath.db.transaction import atomic
from cohortpath.events.bus import EventBus
from cohortpath.events.schemas import COINS_AWARDED, COINS_SPENT
from cohortpath.exceptions import InsufficientBalanceError, LedgerIntegrityError
from cohortpath.ledger.schemas import BalanceAudit, LeaderboardEntry, LedgerStatistics

logger = logging.getLogger(__name__)

EARNED = "earned"
SPENT = "spent"
BONUS = "bonus"
TRANSACTION_TYPES = (EARNED, SPENT, BONUS)


class CoinLedger:
    """Awards, spends and audits coins for one database session."""

    def __init__(self, db: AsyncSession, events: EventBus | None = None, clock: Clock = utcnow) -> None:
        self.db = db
        self.events = events
        self.clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @atomic
    async def award_coins(
        self,
        user_id: int,
        amount: int,
        source_type: str,
        source_id: int | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        created_by: int | None = None,
    ) -> CoinTransaction:
        """Credit ``amount`` coins. Replaying an ``idempotency_key`` is a no-op.

        Returns the ledger row, which is the pre-existing one when the key
        has already been used.
        """
        return await self._credit(
            user_id, EARNED, amount, source_type, source_id, description,
            metadata, idempotency_key, created_by,
        )

    @atomic
    async def award_bonus(
        self,
        user_id: int,
        amount: int,
        description: str,
        awarded_by: int | None = None,
    ) -> CoinTransaction:
        """Manual bonus credit recorded with ``source_type="manual"``."""
        return await self._credit(
            user_id, BONUS, amount, "manual", None, description,
            {"awarded_by": awarded_by}, None, awarded_by,
        )

    @atomic
    async def spend_coins(
        self,
        user_id: int,
        amount: int,
        source_type: str,
        source_id: int | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CoinTransaction | None:
        """Debit ``amount`` coins, or return None when the balance is short."""
        if amount <= 0:
            raise ValueError("Coin amount must be positive")

        balance = await self._balance_row(user_id)
        now = self.clock()
        result = await self.db.execute(
            update(UserCoinBalance)
            .where(
                UserCoinBalance.user_id == user_id,
                UserCoinBalance.total_balance >= amount,
            )
            .values(
                total_balance=UserCoinBalance.total_balance - amount,
                lifetime_spent=UserCoinBalance.lifetime_spent + amount,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info("Spend of %d coins refused for user %d: insufficient balance", amount, user_id)
            return None

        tx = CoinTransaction(
            user_id=user_id,
            transaction_type=SPENT,
            amount=amount,
            source_type=source_type,
            source_id=source_id,
            description=description,
            transaction_metadata=metadata,
            created_at=now,
        )
        self.db.add(tx)
        await self.db.flush()
        await self.db.refresh(balance)

        if self.events is not None:
            await self.events.emit(
                self.db, COINS_SPENT, user_id,
                amount=amount, source_type=source_type, source_id=source_id,
                transaction_id=tx.id, balance=balance.total_balance,
            )
        return tx

    @atomic
    async def require_spend(
        self,
        user_id: int,
        amount: int,
        source_type: str,
        source_id: int | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CoinTransaction:
        """Like ``spend_coins`` but raises ``InsufficientBalanceError``."""
        tx = await self.spend_coins(user_id, amount, source_type, source_id, description, metadata)
        if tx is None:
            balance = await self.get_balance(user_id)
            raise InsufficientBalanceError(user_id, amount, balance.total_balance)
        return tx

    @atomic
    async def recalculate_balance(self, user_id: int) -> UserCoinBalance:
        """Rebuild the balance row from the transaction history."""
        audit = await self.verify_balance(user_id)
        balance = await self._balance_row(user_id)
        if audit.drift:
            logger.warning("Repairing coin balance drift for user %d: %s", user_id, audit.drift)
        balance.lifetime_earned = audit.ledger_earned
        balance.lifetime_spent = audit.ledger_spent
        balance.total_balance = audit.ledger_total
        balance.updated_at = self.clock()
        await self.db.flush()
        return balance

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @atomic
    async def get_balance(self, user_id: int) -> UserCoinBalance:
        """Balance row for a user, created at zero when missing."""
        return await self._balance_row(user_id)

    async def current_balance(self, user_id: int) -> int:
        """Spendable coins without creating a balance row."""
        balance = await self.db.get(UserCoinBalance, user_id)
        return balance.total_balance if balance is not None else 0

    async def has_sufficient_balance(self, user_id: int, amount: int) -> bool:
        return await self.current_balance(user_id) >= amount

    async def find_transaction(self, idempotency_key: str) -> CoinTransaction | None:
        return await self._find_by_key(idempotency_key)

    async def verify_balance(self, user_id: int) -> BalanceAudit:
        """Compare the stored balance with the sums of the ledger."""
        earned_expr = func.coalesce(
            func.sum(case((CoinTransaction.transaction_type.in_((EARNED, BONUS)), CoinTransaction.amount), else_=0)),
            0,
        )
        spent_expr = func.coalesce(
            func.sum(case((CoinTransaction.transaction_type == SPENT, CoinTransaction.amount), else_=0)),
            0,
        )
        row = (
            await self.db.execute(
                select(earned_expr, spent_expr).where(CoinTransaction.user_id == user_id)
            )
        ).one()
        ledger_earned, ledger_spent = int(row[0]), int(row[1])

        balance = await self.db.get(UserCoinBalance, user_id)
        stored_total = balance.total_balance if balance is not None else 0
        stored_earned = balance.lifetime_earned if balance is not None else 0
        stored_spent = balance.lifetime_spent if balance is not None else 0

        drift = {
            "total_balance": stored_total - (ledger_earned - ledger_spent),
            "lifetime_earned": stored_earned - ledger_earned,
            "lifetime_spent": stored_spent - ledger_spent,
        }
        return BalanceAudit(
            user_id=user_id,
            stored_total=stored_total,
            stored_earned=stored_earned,
            stored_spent=stored_spent,
            ledger_earned=ledger_earned,
            ledger_spent=ledger_spent,
            drift={k: v for k, v in drift.items() if v != 0},
        )

    async def assert_balance_consistent(self, user_id: int) -> BalanceAudit:
        audit = await self.verify_balance(user_id)
        if audit.drift:
            raise LedgerIntegrityError(user_id, audit.drift)
        return audit

    async def get_transaction_history(
        self,
        user_id: int,
        limit: int | None = None,
        transaction_type: str | None = None,
    ) -> list[CoinTransaction]:
        """Most recent transactions first."""
        query = select(CoinTransaction).where(CoinTransaction.user_id == user_id)
        if transaction_type is not None:
            query = query.where(CoinTransaction.transaction_type == transaction_type)
        query = query.order_by(CoinTransaction.created_at.desc(), CoinTransaction.id.desc())
        query = query.limit(limit or get_settings().transaction_history_limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_earnings_by_source(self, user_id: int) -> dict[str, int]:
        result = await self.db.execute(
            select(CoinTransaction.source_type, func.sum(CoinTransaction.amount))
            .where(
                CoinTransaction.user_id == user_id,
                CoinTransaction.transaction_type.in_((EARNED, BONUS)),
            )
            .group_by(CoinTransaction.source_type)
        )
        return {source: int(total) for source, total in result.all()}

    async def get_leaderboard(self, limit: int | None = None, cohort_id: int | None = None) -> list[LeaderboardEntry]:
        """Users ordered by current balance, optionally limited to one cohort."""
        query = select(UserCoinBalance)
        if cohort_id is not None:
            query = query.where(UserCoinBalance.user_id.in_(self._cohort_members(cohort_id)))
        query = query.order_by(UserCoinBalance.total_balance.desc(), UserCoinBalance.user_id)
        query = query.limit(limit or get_settings().leaderboard_limit)
        rows = (await self.db.execute(query)).scalars().all()
        return [
            LeaderboardEntry(
                rank=position,
                user_id=row.user_id,
                total_balance=row.total_balance,
                lifetime_earned=row.lifetime_earned,
            )
            for position, row in enumerate(rows, start=1)
        ]

    async def get_user_rank(self, user_id: int, cohort_id: int | None = None) -> int:
        """1 + number of users holding strictly more coins."""
        balance = await self.db.get(UserCoinBalance, user_id)
        mine = balance.total_balance if balance is not None else 0
        query = select(func.count()).select_from(UserCoinBalance).where(UserCoinBalance.total_balance > mine)
        if cohort_id is not None:
            query = query.where(UserCoinBalance.user_id.in_(self._cohort_members(cohort_id)))
        ahead = (await self.db.execute(query)).scalar_one()
        return int(ahead) + 1

    async def get_statistics(self) -> LedgerStatistics:
        totals = (
            await self.db.execute(
                select(
                    func.coalesce(func.sum(UserCoinBalance.total_balance), 0),
                    func.coalesce(func.sum(UserCoinBalance.lifetime_earned), 0),
                    func.coalesce(func.sum(UserCoinBalance.lifetime_spent), 0),
                )
            )
        ).one()
        tx_count = (await self.db.execute(select(func.count()).select_from(CoinTransaction))).scalar_one()
        active = (
            await self.db.execute(
                select(func.count()).select_from(UserCoinBalance).where(UserCoinBalance.total_balance > 0)
            )
        ).scalar_one()
        return LedgerStatistics(
            total_coins_in_circulation=int(totals[0]),
            total_coins_earned=int(totals[1]),
            total_coins_spent=int(totals[2]),
            total_transactions=int(tx_count),
            active_users_with_coins=int(active),
            top_earners=await self.get_leaderboard(limit=5),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _credit(
        self,
        user_id: int,
        transaction_type: str,
        amount: int,
        source_type: str,
        source_id: int | None,
        description: str | None,
        metadata: dict[str, Any] | None,
        idempotency_key: str | None,
        created_by: int | None,
    ) -> CoinTransaction:
        if amount <= 0:
            raise ValueError("Coin amount must be positive")

        if idempotency_key is not None:
            existing = await self._find_by_key(idempotency_key)
            if existing is not None:
                return existing

        try:
            async with self.db.begin_nested():
                tx = await self._append_credit(
                    user_id, transaction_type, amount, source_type, source_id,
                    description, metadata, idempotency_key, created_by,
                )
        except IntegrityError:
            # Another request used the same key first.
            if idempotency_key is None:
                raise
            existing = await self._find_by_key(idempotency_key)
            if existing is None:
                raise
            return existing

        if self.events is not None:
            await self.events.emit(
                self.db, COINS_AWARDED, user_id,
                amount=amount, source_type=source_type, source_id=source_id,
                transaction_id=tx.id, transaction_type=transaction_type,
            )
        return tx

    async def _append_credit(
        self,
        user_id: int,
        transaction_type: str,
        amount: int,
        source_type: str,
        source_id: int | None,
        description: str | None,
        metadata: dict[str, Any] | None,
        idempotency_key: str | None,
        created_by: int | None,
    ) -> CoinTransaction:
        now = self.clock()
        tx = CoinTransaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            source_type=source_type,
            source_id=source_id,
            description=description,
            transaction_metadata=metadata,
            idempotency_key=idempotency_key,
            created_by=created_by,
            created_at=now,
        )
        self.db.add(tx)
        await self.db.flush()

        balance = await self._balance_row(user_id)
        await self.db.execute(
            update(UserCoinBalance)
            .where(UserCoinBalance.user_id == user_id)
            .values(
                total_balance=UserCoinBalance.total_balance + amount,
                lifetime_earned=UserCoinBalance.lifetime_earned + amount,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(balance)
        return tx

    async def _find_by_key(self, idempotency_key: str) -> CoinTransaction | None:
        result = await self.db.execute(
            select(CoinTransaction).where(CoinTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def _balance_row(self, user_id: int) -> UserCoinBalance:
        balance = await self.db.get(UserCoinBalance, user_id)
        if balance is None:
            balance = UserCoinBalance(
                user_id=user_id,
                total_balance=0,
                lifetime_earned=0,
                lifetime_spent=0,
                updated_at=self.clock(),
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(balance)
                    await self.db.flush()
            except IntegrityError:
                balance = await self.db.get(UserCoinBalance, user_id)
                if balance is None:
                    raise
        return balance

    @staticmethod
    def _cohort_members(cohort_id: int) -> Any:
        return select(UserProgress.user_id).where(UserProgress.cohort_id == cohort_id).distinct()
