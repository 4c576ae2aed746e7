"""Balance ledger backed by Redis with an SQL audit trail."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis.exceptions import NoScriptError
from sqlalchemy import select

from betapp.database_schema import TransactionRecord
from betapp.entities import LedgerTransaction, Money, TransactionType, UserId
from betapp.exceptions import InsufficientFundsError
from betapp.metrics import LEDGER_ADJUSTMENTS, LEDGER_AUDIT_FAILURES
from betapp.round_store import Database
from betapp.utils.time_utils import ensure_utc, now_utc


logger = logging.getLogger(__name__)


class Ledger(Protocol):
    """Balance collaborator used by the lifecycle engine."""

    async def get_balance(self, user_id: UserId) -> Money:
        ...

    async def adjust(
        self,
        user_id: UserId,
        delta: Money,
        reason: TransactionType,
        ref_id: Optional[int] = None,
    ) -> Money:
        ...


class TransactionStore(Protocol):
    async def record(
        self,
        user_id: UserId,
        amount: Money,
        type_: TransactionType,
        reference_id: Optional[int] = None,
    ) -> Optional[LedgerTransaction]:
        ...

    async def list_by_user(self, user_id: UserId, limit: int) -> List[LedgerTransaction]:
        ...


def _transaction_from_record(record: TransactionRecord) -> LedgerTransaction:
    return LedgerTransaction(
        id=record.id,
        user_id=record.user_id,
        amount=record.amount,
        type=TransactionType(record.type),
        reference_id=record.reference_id,
        created_at=ensure_utc(record.created_at),
    )


class SqlTransactionStore:
    """Append-only transaction rows stored next to rounds and wagers."""

    def __init__(self, database: Database) -> None:
        self._database = database

    async def record(
        self,
        user_id: UserId,
        amount: Money,
        type_: TransactionType,
        reference_id: Optional[int] = None,
    ) -> Optional[LedgerTransaction]:
        """Append one row; returns ``None`` when the write was queued.

        Inside an open :meth:`Database.transaction` the row is written after
        that transaction ends, so a bet is audited even if its wager insert
        is rolled back and the stake refunded.
        """

        record = TransactionRecord(
            user_id=str(user_id),
            amount=int(amount),
            type=TransactionType(type_).value,
            reference_id=reference_id,
            created_at=now_utc(),
        )
        if self._database.defer(lambda: self._insert(record)):
            return None
        return await self._insert(record)

    async def _insert(self, record: TransactionRecord) -> LedgerTransaction:
        async with self._database.session() as session:
            async with session.begin():
                session.add(record)
                await session.flush()
                return _transaction_from_record(record)

    async def list_by_user(self, user_id: UserId, limit: int) -> List[LedgerTransaction]:
        stmt = (
            select(TransactionRecord)
            .where(TransactionRecord.user_id == str(user_id))
            .order_by(TransactionRecord.created_at.desc(), TransactionRecord.id.desc())
            .limit(limit)
        )
        async with self._database.session() as session:
            result = await session.scalars(stmt)
            return [_transaction_from_record(record) for record in result]

    async def list_by_reference(self, reference_id: int) -> List[LedgerTransaction]:
        stmt = (
            select(TransactionRecord)
            .where(TransactionRecord.reference_id == reference_id)
            .order_by(TransactionRecord.id)
        )
        async with self._database.session() as session:
            result = await session.scalars(stmt)
            return [_transaction_from_record(record) for record in result]


@dataclass(frozen=True)
class LeaderboardEntry:
    user_id: UserId
    display_name: str
    balance: Money


class RedisLedger:
    """Per-user balances kept in Redis.

    Debits run through a Lua script that only decrements when the balance
    covers the amount, so concurrent debits can never overdraw an account.
    A sorted set mirrors every balance for the leaderboard and a hash keeps
    the last known display name of each user.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        *,
        transactions: Optional[TransactionStore] = None,
        starting_balance: Money = 1000,
        key_prefix: str = "betbot:balance:",
        leaderboard_key: str = "betbot:leaderboard",
        names_key: str = "betbot:names",
    ) -> None:
        self._kv = redis_client
        self._transactions = transactions
        self._starting_balance = int(starting_balance)
        self._key_prefix = key_prefix
        self._leaderboard_key = leaderboard_key
        self._names_key = names_key

        # Returns the new balance, or -1 when the balance does not cover ARGV[1].
        self._lua_decr_if_ge = self._kv.register_script(
            """
            local current = tonumber(redis.call('GET', KEYS[1]))
            if current == nil then
                redis.call('SET', KEYS[1], ARGV[2])
                current = tonumber(ARGV[2])
            end
            local amount = tonumber(ARGV[1])
            if current >= amount then
                return redis.call('DECRBY', KEYS[1], amount)
            else
                return -1
            end
            """
        )

    def _balance_key(self, user_id: UserId) -> str:
        return f"{self._key_prefix}{user_id}"

    async def ensure_account(
        self, user_id: UserId, display_name: Optional[str] = None
    ) -> Money:
        """Seed ``user_id`` with the starting balance on first sight."""

        user_id = str(user_id)
        created = await self._kv.set(
            self._balance_key(user_id), self._starting_balance, nx=True
        )
        if display_name:
            await self._kv.hset(self._names_key, user_id, display_name)
        if created:
            await self._kv.zadd(self._leaderboard_key, {user_id: self._starting_balance})
            await self._audit(user_id, self._starting_balance, TransactionType.INIT, None)
            logger.info(
                "Ledger account opened",
                extra={
                    "event_type": "account_opened",
                    "user_id": user_id,
                    "amount": self._starting_balance,
                },
            )
            return self._starting_balance
        return await self._read_balance(user_id)

    async def _read_balance(self, user_id: UserId) -> Money:
        raw = await self._kv.get(self._balance_key(user_id))
        if raw is None:
            return await self.ensure_account(user_id)
        return int(raw)

    async def get_balance(self, user_id: UserId) -> Money:
        return await self._read_balance(str(user_id))

    async def adjust(
        self,
        user_id: UserId,
        delta: Money,
        reason: TransactionType,
        ref_id: Optional[int] = None,
    ) -> Money:
        """Apply ``delta`` to the balance of ``user_id`` and return the new balance.

        Raises :class:`InsufficientFundsError` when a debit is not covered;
        the balance is left untouched in that case.
        """

        user_id = str(user_id)
        reason = TransactionType(reason)
        delta = int(delta)
        await self.ensure_account(user_id)
        if delta == 0:
            return await self._read_balance(user_id)

        if delta < 0:
            balance = await self._debit(user_id, -delta)
        else:
            balance = int(await self._kv.incrby(self._balance_key(user_id), delta))

        await self._kv.zadd(self._leaderboard_key, {user_id: balance})
        LEDGER_ADJUSTMENTS.labels(reason=reason.value).inc()
        await self._audit(user_id, delta, reason, ref_id)
        logger.debug(
            "Ledger adjusted",
            extra={
                "event_type": "ledger_adjusted",
                "user_id": user_id,
                "amount": delta,
                "reason": reason.value,
                "reference_id": ref_id,
            },
        )
        return balance

    async def _debit(self, user_id: UserId, amount: Money) -> Money:
        key = self._balance_key(user_id)
        try:
            result = await self._lua_decr_if_ge(
                keys=[key], args=[amount, self._starting_balance]
            )
        except (NoScriptError, ModuleNotFoundError):
            current_raw = await self._kv.get(key)
            if current_raw is None:
                await self._kv.set(key, self._starting_balance)
                current = self._starting_balance
            else:
                current = int(current_raw)
            if current >= amount:
                result = await self._kv.decrby(key, amount)
            else:
                result = -1
        if int(result) == -1:
            raise InsufficientFundsError(user_id, amount, await self._read_balance(user_id))
        return int(result)

    async def _audit(
        self,
        user_id: UserId,
        amount: Money,
        reason: TransactionType,
        ref_id: Optional[int],
    ) -> None:
        if self._transactions is None:
            return
        try:
            await self._transactions.record(user_id, amount, reason, ref_id)
        except Exception:
            # The Redis balance is already applied; never report it as failed.
            LEDGER_AUDIT_FAILURES.inc()
            logger.exception(
                "Failed to write ledger audit row",
                extra={
                    "event_type": "ledger_audit_failed",
                    "user_id": user_id,
                    "amount": amount,
                    "reason": reason.value,
                },
            )

    async def set_balance(
        self, user_id: UserId, amount: Money, display_name: Optional[str] = None
    ) -> Money:
        """Overwrite a balance; the difference is audited as an ``init`` row."""

        if amount < 0:
            raise ValueError("Balance cannot be negative")
        user_id = str(user_id)
        current = await self.ensure_account(user_id, display_name)
        delta = int(amount) - current
        if delta == 0:
            return current
        return await self.adjust(user_id, delta, TransactionType.INIT)

    async def donate(
        self, from_user: UserId, to_user: UserId, amount: Money
    ) -> Tuple[Money, Money]:
        """Move ``amount`` between two users; returns both new balances."""

        if amount <= 0:
            raise ValueError("Donation amount must be positive")
        if str(from_user) == str(to_user):
            raise ValueError("Cannot donate to yourself")
        sender_balance = await self.adjust(from_user, -amount, TransactionType.DONATE)
        try:
            recipient_balance = await self.adjust(to_user, amount, TransactionType.DONATE)
        except Exception:
            logger.exception(
                "Donation credit failed; returning funds to sender",
                extra={"event_type": "donation_failed", "user_id": str(to_user), "amount": amount},
            )
            await self.adjust(from_user, amount, TransactionType.REFUND)
            raise
        return sender_balance, recipient_balance

    async def get_leaderboard(self, limit: int = 5) -> List[LeaderboardEntry]:
        if limit <= 0:
            return []
        rows = await self._kv.zrevrange(self._leaderboard_key, 0, limit - 1, withscores=True)
        if not rows:
            return []
        user_ids = [
            member.decode() if isinstance(member, bytes) else str(member)
            for member, _score in rows
        ]
        names = await self._kv.hmget(self._names_key, user_ids)
        entries: List[LeaderboardEntry] = []
        for user_id, (_member, score), name in zip(user_ids, rows, names):
            if isinstance(name, bytes):
                name = name.decode()
            entries.append(
                LeaderboardEntry(
                    user_id=user_id,
                    display_name=name or user_id,
                    balance=int(score),
                )
            )
        return entries

    async def get_transaction_history(
        self, user_id: UserId, limit: int = 10
    ) -> List[LedgerTransaction]:
        if self._transactions is None:
            return []
        return await self._transactions.list_by_user(str(user_id), limit)


__all__ = [
    "LeaderboardEntry",
    "Ledger",
    "RedisLedger",
    "SqlTransactionStore",
    "TransactionStore",
]
