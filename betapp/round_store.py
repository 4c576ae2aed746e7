"""SQL-backed repositories for rounds and wagers."""

from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
import logging
from contextvars import ContextVar
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
)

from sqlalchemy import func, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from betapp.database_schema import Base, RoundRecord, WagerRecord
from betapp.entities import (
    MatchType,
    Round,
    RoundId,
    RoundKind,
    RoundStatus,
    UserId,
    Wager,
    WagerId,
    WagerOutcome,
    can_transition,
)
from betapp.exceptions import InvalidTransitionError, OutcomeAlreadySetError, StoreNotReadyError
from betapp.utils.time_utils import ensure_utc, now_utc


logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]
DeferredWrite = Callable[[], Awaitable[Any]]


class Database:
    """Owns the async engine and session factory shared by the SQL stores."""

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        self._url = database_url
        engine_kwargs: Dict[str, object] = {"echo": echo, "future": True}
        if database_url.startswith("sqlite+aiosqlite:///:memory"):
            engine_kwargs["poolclass"] = StaticPool
        self._engine: Optional[AsyncEngine] = create_async_engine(
            database_url, **engine_kwargs
        )
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )
        self._schema_lock = asyncio.Lock()
        self._initialized = False
        self._deferred: ContextVar[Optional[List[DeferredWrite]]] = ContextVar(
            f"betapp_deferred_writes_{id(self)}", default=None
        )

    @property
    def url(self) -> str:
        return self._url

    def _prepare_sqlite_directory(self) -> None:
        url = make_url(self._url)
        if url.get_backend_name() != "sqlite":
            return
        database = url.database
        if not database or database == ":memory:":
            return
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    async def ensure_ready(self) -> None:
        if self._initialized:
            return
        async with self._schema_lock:
            if self._initialized:
                return
            if self._engine is None:
                raise StoreNotReadyError("Database engine has been disposed")
            self._prepare_sqlite_directory()
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._initialized = True
            logger.info(
                "Database schema ready",
                extra={"category": "database", "stage": "schema_ready"},
            )

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._sessionmaker is None:
            raise StoreNotReadyError("Database engine has been disposed")
        await self.ensure_ready()
        async with self._sessionmaker() as session:
            yield session

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Open a session with a begun transaction for the current task.

        Writes queued through :meth:`defer` while the block runs are applied
        on their own session once the transaction has ended, committed or
        rolled back. SQLite allows a single writer, so a second session
        writing inside the block would wait on this one's lock.
        """

        queued: List[DeferredWrite] = []
        token = self._deferred.set(queued)
        try:
            async with self.session() as session:
                async with session.begin():
                    yield session
        finally:
            self._deferred.reset(token)
            await self._run_deferred(queued)

    def defer(self, write: DeferredWrite) -> bool:
        """Queue ``write`` behind the open :meth:`transaction`, if there is one."""

        queued = self._deferred.get()
        if queued is None:
            return False
        queued.append(write)
        return True

    async def _run_deferred(self, queued: List[DeferredWrite]) -> None:
        for write in queued:
            try:
                await write()
            except Exception:
                logger.exception(
                    "Deferred database write failed",
                    extra={"category": "database", "stage": "deferred_write"},
                )

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        self._initialized = False


# ---------------------------------------------------------------------------
# Repository interfaces
# ---------------------------------------------------------------------------


class RoundStore(Protocol):
    async def create_round(self, fields: Mapping[str, Any]) -> Round: ...

    async def get_round(self, round_id: RoundId) -> Optional[Round]: ...

    async def update_status(self, round_id: RoundId, status: RoundStatus) -> Optional[Round]: ...

    async def set_winner(self, round_id: RoundId, side: str) -> Optional[Round]: ...

    async def list_by_status(
        self,
        statuses: Iterable[RoundStatus],
        limit: Optional[int] = None,
        *,
        kind: Optional[RoundKind] = None,
    ) -> List[Round]: ...

    async def list_recent(
        self, limit: int, *, kind: Optional[RoundKind] = None
    ) -> List[Round]: ...


class WagerStore(Protocol):
    async def create_wager(self, fields: Mapping[str, Any]) -> Wager: ...

    def staged_wager(
        self, fields: Mapping[str, Any]
    ) -> contextlib.AbstractAsyncContextManager[Wager]: ...

    async def list_by_round(self, round_id: RoundId) -> List[Wager]: ...

    async def has_wager(self, user_id: UserId, round_id: RoundId) -> bool: ...

    async def update_outcome(
        self, wager_id: WagerId, outcome: WagerOutcome
    ) -> Optional[Wager]: ...

    async def list_by_user(self, user_id: UserId, limit: int) -> List[Wager]: ...


# ---------------------------------------------------------------------------
# SQL implementations
# ---------------------------------------------------------------------------


def _round_from_record(record: RoundRecord) -> Round:
    return Round(
        id=record.id,
        kind=RoundKind(record.kind),
        side_a=record.side_a,
        side_b=record.side_b,
        status=RoundStatus(record.status),
        created_at=ensure_utc(record.created_at),
        updated_at=ensure_utc(record.updated_at),
        started_at=ensure_utc(record.started_at) if record.started_at else None,
        winner=record.winner,
        match_type=MatchType(record.match_type) if record.match_type else None,
        side_a_id=record.side_a_id,
        side_b_id=record.side_b_id,
        title=record.title,
        description=record.description,
        participant_id=record.participant_id,
    )


def _wager_from_record(record: WagerRecord) -> Wager:
    return Wager(
        id=record.id,
        round_id=record.round_id,
        user_id=record.user_id,
        side=record.side,
        amount=record.amount,
        outcome=WagerOutcome(record.outcome),
        created_at=ensure_utc(record.created_at),
        user_name=record.user_name,
    )


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


class SqlRoundStore:
    """Round repository backed by :class:`Database`."""

    def __init__(self, database: Database, *, clock: Clock = now_utc) -> None:
        self._database = database
        self._clock = clock

    async def create_round(self, fields: Mapping[str, Any]) -> Round:
        now = ensure_utc(fields.get("created_at") or self._clock())
        record = RoundRecord(
            kind=_enum_value(fields["kind"]),
            match_type=_enum_value(fields.get("match_type")),
            side_a=str(fields["side_a"]),
            side_b=str(fields["side_b"]),
            side_a_id=_optional_str(fields.get("side_a_id")),
            side_b_id=_optional_str(fields.get("side_b_id")),
            title=fields.get("title"),
            description=fields.get("description"),
            participant_id=_optional_str(fields.get("participant_id")),
            status=RoundStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        async with self._database.session() as session:
            async with session.begin():
                session.add(record)
                await session.flush()
                return _round_from_record(record)

    async def get_round(self, round_id: RoundId) -> Optional[Round]:
        async with self._database.session() as session:
            record = await session.get(RoundRecord, round_id)
            return _round_from_record(record) if record is not None else None

    async def update_status(self, round_id: RoundId, status: RoundStatus) -> Optional[Round]:
        """Move a round along the lifecycle graph.

        Entering ``started`` stamps ``started_at``. Any edge outside
        :data:`betapp.entities.ROUND_TRANSITIONS` raises
        :class:`InvalidTransitionError` and leaves the row untouched.
        """

        target = RoundStatus(status)
        async with self._database.session() as session:
            async with session.begin():
                record = await session.get(RoundRecord, round_id)
                if record is None:
                    return None
                current = RoundStatus(record.status)
                if not can_transition(current, target):
                    raise InvalidTransitionError(round_id, current.value, target.value)
                now = self._clock()
                record.status = target.value
                record.updated_at = now
                if target == RoundStatus.STARTED:
                    record.started_at = now
                return _round_from_record(record)

    async def set_winner(self, round_id: RoundId, side: str) -> Optional[Round]:
        """Record the winning side and mark the round ``done`` in one write."""

        async with self._database.session() as session:
            async with session.begin():
                record = await session.get(RoundRecord, round_id)
                if record is None:
                    return None
                current = RoundStatus(record.status)
                if not can_transition(current, RoundStatus.DONE):
                    raise InvalidTransitionError(
                        round_id, current.value, RoundStatus.DONE.value
                    )
                record.winner = side
                record.status = RoundStatus.DONE.value
                record.updated_at = self._clock()
                return _round_from_record(record)

    async def list_by_status(
        self,
        statuses: Iterable[RoundStatus],
        limit: Optional[int] = None,
        *,
        kind: Optional[RoundKind] = None,
    ) -> List[Round]:
        values = [RoundStatus(status).value for status in statuses]
        stmt = select(RoundRecord).where(RoundRecord.status.in_(values))
        if kind is not None:
            stmt = stmt.where(RoundRecord.kind == RoundKind(kind).value)
        stmt = stmt.order_by(RoundRecord.created_at.desc(), RoundRecord.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._database.session() as session:
            result = await session.scalars(stmt)
            return [_round_from_record(record) for record in result]

    async def list_recent(
        self, limit: int, *, kind: Optional[RoundKind] = None
    ) -> List[Round]:
        stmt = select(RoundRecord)
        if kind is not None:
            stmt = stmt.where(RoundRecord.kind == RoundKind(kind).value)
        stmt = stmt.order_by(RoundRecord.id.desc()).limit(limit)
        async with self._database.session() as session:
            result = await session.scalars(stmt)
            return [_round_from_record(record) for record in result]


class SqlWagerStore:
    """Wager repository backed by :class:`Database`."""

    def __init__(self, database: Database, *, clock: Clock = now_utc) -> None:
        self._database = database
        self._clock = clock

    def _new_record(self, fields: Mapping[str, Any]) -> WagerRecord:
        return WagerRecord(
            round_id=int(fields["round_id"]),
            user_id=str(fields["user_id"]),
            user_name=fields.get("user_name"),
            side=str(fields["side"]),
            amount=int(fields["amount"]),
            outcome=WagerOutcome.PENDING.value,
            created_at=ensure_utc(fields.get("created_at") or self._clock()),
        )

    async def create_wager(self, fields: Mapping[str, Any]) -> Wager:
        async with self.staged_wager(fields) as wager:
            return wager

    @contextlib.asynccontextmanager
    async def staged_wager(self, fields: Mapping[str, Any]) -> AsyncIterator[Wager]:
        """Insert a wager inside an open transaction.

        The row is flushed so the yielded wager carries its id, and is
        committed only when the ``async with`` body completes. An exception
        raised by the body rolls the insert back. Writes queued through
        :meth:`Database.defer` meanwhile run afterwards either way.
        """

        async with self._database.transaction() as session:
            record = self._new_record(fields)
            session.add(record)
            await session.flush()
            yield _wager_from_record(record)

    async def list_by_round(self, round_id: RoundId) -> List[Wager]:
        stmt = (
            select(WagerRecord)
            .where(WagerRecord.round_id == round_id)
            .order_by(WagerRecord.id)
        )
        async with self._database.session() as session:
            result = await session.scalars(stmt)
            return [_wager_from_record(record) for record in result]

    async def has_wager(self, user_id: UserId, round_id: RoundId) -> bool:
        stmt = select(func.count(WagerRecord.id)).where(
            WagerRecord.round_id == round_id,
            WagerRecord.user_id == str(user_id),
        )
        async with self._database.session() as session:
            count = await session.scalar(stmt)
            return bool(count)

    async def update_outcome(
        self, wager_id: WagerId, outcome: WagerOutcome
    ) -> Optional[Wager]:
        target = WagerOutcome(outcome)
        async with self._database.session() as session:
            async with session.begin():
                record = await session.get(WagerRecord, wager_id)
                if record is None:
                    return None
                current = WagerOutcome(record.outcome)
                if current != WagerOutcome.PENDING:
                    raise OutcomeAlreadySetError(wager_id, current.value, target.value)
                record.outcome = target.value
                return _wager_from_record(record)

    async def list_by_user(self, user_id: UserId, limit: int) -> List[Wager]:
        stmt = (
            select(WagerRecord)
            .where(WagerRecord.user_id == str(user_id))
            .order_by(WagerRecord.created_at.desc(), WagerRecord.id.desc())
            .limit(limit)
        )
        async with self._database.session() as session:
            result = await session.scalars(stmt)
            return [_wager_from_record(record) for record in result]


__all__ = [
    "Database",
    "RoundStore",
    "SqlRoundStore",
    "SqlWagerStore",
    "WagerStore",
]
