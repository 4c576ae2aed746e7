"""Round lifecycle engine shared by matches and events.

A round moves ``pending -> started -> done`` or to ``canceled`` from either
open state. Every mutating operation for one round runs under that round's
lock from :class:`RoundLockRegistry`, so admission checks and their writes
never interleave with another call for the same round.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from betapp.entities import (
    MatchType,
    Money,
    OperationResult,
    ParticipantId,
    Round,
    RoundError,
    RoundId,
    RoundKind,
    RoundStatistics,
    RoundStatus,
    TransactionType,
    UserId,
    Wager,
    WagerOutcome,
)
from betapp.exceptions import InsufficientFundsError
from betapp.ledger import Ledger
from betapp.metrics import (
    BATCH_FAILURES,
    OPERATION_DURATION,
    ROUND_TRANSITIONS,
    ROUNDS_CREATED,
    WAGERS_PLACED,
    WAGERS_REJECTED,
)
from betapp.round_store import RoundStore, WagerStore
from betapp.scheduler import RoundScheduler
from betapp.sides import SideValidator
from betapp.utils.logging_helpers import (
    ContextLoggerAdapter,
    LoggerLike,
    enforce_context,
)
from betapp.utils.time_utils import format_remaining, now_utc, remaining_window


logger = logging.getLogger(__name__)

DEFAULT_BETTING_WINDOW_SECONDS = 300
DEFAULT_PAYOUT_MULTIPLIER = 2

ROUND_FILTERS = ("all", "active", "completed")


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


class RoundLockRegistry:
    """One :class:`asyncio.Lock` per round id, created on first use.

    ``holders`` counts callers that hold or wait for the lock; an entry is
    only dropped when that count is zero, so a waiter never ends up on a
    lock that a later caller no longer sees.
    """

    def __init__(self) -> None:
        self._entries: Dict[RoundId, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, round_id: RoundId) -> AsyncIterator[None]:
        entry = self._entries.get(round_id)
        if entry is None:
            entry = self._entries[round_id] = _LockEntry()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1

    def discard(self, round_id: RoundId) -> None:
        """Forget the lock of a round unless someone holds or awaits it."""

        entry = self._entries.get(round_id)
        if entry is not None and entry.holders == 0:
            del self._entries[round_id]

    def __contains__(self, round_id: object) -> bool:
        return round_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class _RoundGuard:
    """The round as seen by a locked operation; ``None`` when unknown."""

    __slots__ = ("round",)

    def __init__(self) -> None:
        self.round: Optional[Round] = None

    def track(self, result: OperationResult) -> None:
        round_ = (result.data or {}).get("round")
        if isinstance(round_, Round):
            self.round = round_


def _coerce_amount(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            return None
    return None


class RoundLifecycleEngine:
    """State machine for one kind of round, parameterised by a side validator."""

    def __init__(
        self,
        *,
        kind: RoundKind,
        validator: SideValidator,
        rounds: RoundStore,
        wagers: WagerStore,
        ledger: Ledger,
        scheduler: RoundScheduler,
        window_seconds: int = DEFAULT_BETTING_WINDOW_SECONDS,
        payout_multiplier: int = DEFAULT_PAYOUT_MULTIPLIER,
        default_list_limit: int = 10,
        clock: Callable[[], dt.datetime] = now_utc,
        locks: Optional[RoundLockRegistry] = None,
        logger_: Optional[LoggerLike] = None,
    ) -> None:
        self._kind = RoundKind(kind)
        self._validator = validator
        self._rounds = rounds
        self._wagers = wagers
        self._ledger = ledger
        self._scheduler = scheduler
        self._window_seconds = int(window_seconds)
        self._payout_multiplier = int(payout_multiplier)
        self._default_list_limit = int(default_list_limit)
        self._clock = clock
        self._locks = locks if locks is not None else RoundLockRegistry()
        self._logger: ContextLoggerAdapter = enforce_context(
            logger_ or logger, {"request_category": f"{self._kind.value}_lifecycle"}
        )
        self._noun = self._kind.value.capitalize()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def kind(self) -> RoundKind:
        return self._kind

    @property
    def validator(self) -> SideValidator:
        return self._validator

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    @property
    def locks(self) -> RoundLockRegistry:
        return self._locks

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _timed(self, operation: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            OPERATION_DURATION.labels(operation=f"{self._kind.value}_{operation}").observe(
                time.perf_counter() - start
            )

    async def _load(self, round_id: RoundId) -> Optional[Round]:
        round_ = await self._rounds.get_round(round_id)
        if round_ is None or round_.kind != self._kind:
            return None
        return round_

    @asynccontextmanager
    async def _guarded(self, round_id: RoundId) -> AsyncIterator[_RoundGuard]:
        """Hold the round's lock with the round freshly loaded.

        The lock is dropped from the registry on exit when the round is
        unknown or has reached a final status.
        """

        guard = _RoundGuard()
        try:
            async with self._locks.hold(round_id):
                guard.round = await self._load(round_id)
                yield guard
        finally:
            if guard.round is None or guard.round.status.is_final:
                self._locks.discard(round_id)

    def _remaining(self, round_: Round) -> int:
        if round_.status != RoundStatus.PENDING:
            return 0
        return remaining_window(round_.created_at, self._window_seconds, now=self._clock())

    def _not_found(self, round_id: RoundId) -> OperationResult:
        return OperationResult.fail(
            RoundError.NOT_FOUND, f"{self._noun} #{round_id} not found."
        )

    def _reject_wager(self, reason: RoundError, message: str, **data: Any) -> OperationResult:
        WAGERS_REJECTED.labels(kind=self._kind.value, reason=reason.value).inc()
        return OperationResult.fail(reason, message, **data)

    def _round_fields(
        self, first: Any, second: Any, metadata: Mapping[str, Any]
    ) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "kind": self._kind,
            "title": metadata.get("title"),
            "description": metadata.get("description"),
            "participant_id": metadata.get("participant_id"),
            "created_at": self._clock(),
        }
        if isinstance(first, ParticipantId) and isinstance(second, ParticipantId):
            fields.update(
                match_type=MatchType.PARTICIPANT,
                side_a=first.display,
                side_b=second.display,
                side_a_id=first.key,
                side_b_id=second.key,
            )
        else:
            fields.update(side_a=first.display, side_b=second.display)
            if self._kind == RoundKind.MATCH:
                fields["match_type"] = MatchType.TEAM
        return fields

    # ------------------------------------------------------------------
    # Creation and timers
    # ------------------------------------------------------------------

    async def create_round(
        self,
        sides: Sequence[Any],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> OperationResult:
        """Persist a ``pending`` round and arm its auto-close timer."""

        with self._timed("create"):
            if len(sides) != 2 or not self._validator.validate_pair(sides[0], sides[1]):
                return OperationResult.fail(
                    RoundError.INVALID_SIDES, "The two sides must be different."
                )
            first = self._validator.coerce(sides[0])
            second = self._validator.coerce(sides[1])
            fields = self._round_fields(first, second, metadata or {})
            round_ = await self._rounds.create_round(fields)
            self._scheduler.arm(round_.id, self._window_seconds, self._on_window_elapsed)

            ROUNDS_CREATED.labels(kind=self._kind.value).inc()
            self._logger.for_round(round_.id, "round_created").info(
                "Round created",
                extra={"round_kind": self._kind.value, "status": round_.status.value},
            )
            return OperationResult.ok(
                f"{self._noun} #{round_.id} created: "
                f"{self._validator.describe_round(round_)}. "
                f"Betting closes in {format_remaining(self._window_seconds)}.",
                round=round_,
                remaining_seconds=self._window_seconds,
            )

    async def _on_window_elapsed(self, round_id: RoundId) -> None:
        result = await self.close_round(round_id)
        if not result.success:
            self._logger.for_round(round_id, "timer_fired").warning(
                "Auto-close found nothing to close",
                extra={"reason": result.error.value if result.error else None},
            )

    async def rehydrate(self) -> Dict[str, int]:
        """Re-arm timers for ``pending`` rounds, closing those already expired."""

        stats = {"rearmed": 0, "closed": 0}
        pending = await self._rounds.list_by_status([RoundStatus.PENDING], kind=self._kind)
        for round_ in pending:
            remaining = self._remaining(round_)
            log = self._logger.for_round(round_.id, "round_rehydrated")
            if remaining > 0:
                self._scheduler.arm(round_.id, remaining, self._on_window_elapsed)
                stats["rearmed"] += 1
                log.info("Auto-close timer re-armed", extra={"remaining": remaining})
            else:
                await self.close_round(round_.id)
                stats["closed"] += 1
                log.info("Expired round closed during rehydration")
        return stats

    async def get_open_window(self, round_id: RoundId) -> int:
        round_ = await self._load(round_id)
        if round_ is None:
            return 0
        return self._remaining(round_)

    # ------------------------------------------------------------------
    # Wagers
    # ------------------------------------------------------------------

    async def place_wager(
        self,
        round_id: RoundId,
        user_id: UserId,
        side: Any,
        amount: Any,
        *,
        user_name: Optional[str] = None,
    ) -> OperationResult:
        user_id = str(user_id)
        with self._timed("place_wager"):
            async with self._guarded(round_id) as guard:
                return await self._place_wager_locked(
                    round_id, guard.round, user_id, side, amount, user_name
                )

    async def _place_wager_locked(
        self,
        round_id: RoundId,
        round_: Optional[Round],
        user_id: UserId,
        side: Any,
        amount: Any,
        user_name: Optional[str],
    ) -> OperationResult:
        if round_ is None:
            WAGERS_REJECTED.labels(kind=self._kind.value, reason=RoundError.NOT_FOUND.value).inc()
            return self._not_found(round_id)

        if round_.status != RoundStatus.PENDING:
            return self._reject_wager(
                RoundError.BETTING_CLOSED,
                f"Betting is closed! The {self._kind.value} has already started.",
            )

        remaining = self._remaining(round_)
        if remaining <= 0:
            # The timer was missed; close now so the stored status catches up.
            await self._close_locked(round_)
            return self._reject_wager(
                RoundError.BETTING_CLOSED,
                f"Betting time has expired! The {self._kind.value} has now started.",
            )

        side_key = self._validator.resolve(round_, side)
        if side_key is None:
            return self._reject_wager(
                RoundError.INVALID_SIDE,
                f"Invalid side! Choose {round_.side_a} or {round_.side_b}.",
            )

        stake = _coerce_amount(amount)
        if stake is None or stake <= 0:
            return self._reject_wager(RoundError.INVALID_AMOUNT, "Invalid bet amount!")

        if await self._wagers.has_wager(user_id, round_id):
            return self._reject_wager(
                RoundError.DUPLICATE_WAGER,
                f"You already placed a bet on this {self._kind.value}.",
            )

        balance = await self._ledger.get_balance(user_id)
        if balance < stake:
            return self._reject_wager(
                RoundError.INSUFFICIENT_BALANCE,
                "Not enough balance!",
                balance=balance,
            )

        fields = {
            "round_id": round_id,
            "user_id": user_id,
            "user_name": user_name,
            "side": side_key,
            "amount": stake,
            "created_at": self._clock(),
        }
        try:
            wager, new_balance = await self._stage_and_debit(fields)
        except InsufficientFundsError as exc:
            return self._reject_wager(
                RoundError.INSUFFICIENT_BALANCE,
                "Not enough balance!",
                balance=exc.balance,
            )

        WAGERS_PLACED.labels(kind=self._kind.value).inc()
        self._logger.for_wager(wager, "wager_placed").info("Wager placed", extra={"amount": stake})
        return OperationResult.ok(
            f"Bet of {stake} on {self._validator.describe_side(round_, side_key)} placed! "
            f"Betting closes in {format_remaining(remaining)}.",
            wager=wager,
            balance=new_balance,
            remaining_seconds=remaining,
        )

    async def _stage_and_debit(self, fields: Mapping[str, Any]) -> Tuple[Wager, Money]:
        """Insert the wager and debit the stake; no wager survives a failed debit.

        If the debit went through but the insert then fails to commit, the
        stake is credited back before the error propagates.
        """

        debited: Optional[Wager] = None
        try:
            async with self._wagers.staged_wager(fields) as wager:
                new_balance = await self._ledger.adjust(
                    wager.user_id, -wager.amount, TransactionType.BET, wager.id
                )
                debited = wager
        except Exception:
            if debited is not None:
                await self._compensate_debit(debited)
            raise
        return debited, new_balance

    async def _compensate_debit(self, wager: Wager) -> None:
        log = self._logger.for_wager(wager, "wager_compensated")
        try:
            await self._ledger.adjust(
                wager.user_id, wager.amount, TransactionType.REFUND, wager.id
            )
        except Exception:
            log.exception("Failed to return stake after wager insert failed")
            return
        log.warning("Stake returned after wager insert failed", extra={"amount": wager.amount})

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def close_round(self, round_id: RoundId) -> OperationResult:
        """Stop accepting wagers; a no-op success when already closed."""

        with self._timed("close"):
            async with self._guarded(round_id) as guard:
                if guard.round is None:
                    return self._not_found(round_id)
                return await self._close_locked(guard.round)

    async def _close_locked(self, round_: Round) -> OperationResult:
        if round_.status != RoundStatus.PENDING:
            return OperationResult.ok(
                f"{self._noun} #{round_.id} is not accepting bets.",
                round=round_,
                already_closed=True,
            )

        self._scheduler.disarm(round_.id)
        updated = await self._rounds.update_status(round_.id, RoundStatus.STARTED)
        if updated is None:
            return self._not_found(round_.id)
        wagers = await self._wagers.list_by_round(round_.id)
        statistics = RoundStatistics.from_wagers(updated, wagers)

        ROUND_TRANSITIONS.labels(kind=self._kind.value, status=RoundStatus.STARTED.value).inc()
        self._logger.for_round(round_.id, "round_closed").info(
            "Betting closed",
            extra={
                "status": updated.status.value,
                "wager_count": statistics.total_count,
                "amount": statistics.total_amount,
            },
        )
        return OperationResult.ok(
            f"{self._noun} #{round_.id} started! Betting is now closed.",
            round=updated,
            statistics=statistics,
            wagers=wagers,
            already_closed=False,
        )

    async def cancel_round(self, round_id: RoundId) -> OperationResult:
        """Refund every stake and mark the round ``canceled``."""

        with self._timed("cancel"):
            async with self._guarded(round_id) as guard:
                result = await self._cancel_locked(round_id, guard.round)
                guard.track(result)
        return result

    async def _cancel_locked(self, round_id: RoundId, round_: Optional[Round]) -> OperationResult:
        if round_ is None:
            return self._not_found(round_id)
        if round_.status.is_final:
            return OperationResult.fail(
                RoundError.ALREADY_FINAL,
                f"Cannot cancel a {self._kind.value} that is already {round_.status.value}.",
            )

        self._scheduler.disarm(round_id)
        wagers = await self._wagers.list_by_round(round_id)
        refunded: List[Wager] = []
        failed_ids: List[int] = []
        unrecorded_ids: List[int] = []
        for wager in wagers:
            if wager.outcome != WagerOutcome.PENDING:
                continue
            if not await self._credit(wager, wager.amount, TransactionType.REFUND):
                failed_ids.append(wager.id)
                continue
            refunded.append(wager)
            if not await self._record_outcome(wager, WagerOutcome.REFUND):
                unrecorded_ids.append(wager.id)

        updated = await self._rounds.update_status(round_id, RoundStatus.CANCELED)

        ROUND_TRANSITIONS.labels(
            kind=self._kind.value, status=RoundStatus.CANCELED.value
        ).inc()
        self._logger.for_round(round_id, "round_canceled").info(
            "Round canceled",
            extra={
                "refunded": len(refunded),
                "failed": len(failed_ids),
                "unrecorded": len(unrecorded_ids),
            },
        )
        data = {
            "round": updated,
            "refunded": len(refunded),
            "refunded_amount": sum(wager.amount for wager in refunded),
            "failed": len(failed_ids),
            "failed_wager_ids": failed_ids,
            "unrecorded_wager_ids": unrecorded_ids,
        }
        if failed_ids:
            return OperationResult(
                success=False,
                message=(
                    f"{self._noun} #{round_id} canceled, but {len(failed_ids)} "
                    f"of {len(refunded) + len(failed_ids)} refunds failed."
                ),
                data=data,
            )
        if unrecorded_ids:
            return OperationResult(
                success=False,
                message=(
                    f"{self._noun} #{round_id} canceled and all bets refunded, but "
                    f"{len(unrecorded_ids)} wager outcomes were not saved."
                ),
                data=data,
            )
        return OperationResult.ok(
            f"{self._noun} #{round_id} canceled! All bets have been refunded.",
            **data,
        )

    async def _credit(self, wager: Wager, amount: Money, reason: TransactionType) -> bool:
        """Credit one wager's owner; ``False`` when the ledger refused."""

        try:
            await self._ledger.adjust(wager.user_id, amount, reason, wager.id)
        except Exception:
            BATCH_FAILURES.labels(operation=reason.value).inc()
            self._logger.for_wager(wager, f"{reason.value}_failed").exception(
                "Credit failed", extra={"amount": amount}
            )
            return False
        return True

    async def _record_outcome(self, wager: Wager, outcome: WagerOutcome) -> bool:
        try:
            await self._wagers.update_outcome(wager.id, outcome)
        except Exception:
            BATCH_FAILURES.labels(operation="outcome").inc()
            self._logger.for_wager(wager, "outcome_unrecorded").exception(
                "Wager outcome not saved", extra={"outcome": outcome.value}
            )
            return False
        return True

    async def settle_round(self, round_id: RoundId, winning_side: Any) -> OperationResult:
        """Record the outcome once and pay winners ``stake * multiplier``."""

        with self._timed("settle"):
            async with self._guarded(round_id) as guard:
                result = await self._settle_locked(round_id, guard.round, winning_side)
                guard.track(result)
        return result

    async def _settle_locked(
        self, round_id: RoundId, round_: Optional[Round], winning_side: Any
    ) -> OperationResult:
        if round_ is None:
            return self._not_found(round_id)

        winner_key = self._validator.resolve(round_, winning_side)
        if winner_key is None:
            return OperationResult.fail(
                RoundError.INVALID_SIDE,
                f"Invalid winner! Must be {round_.side_a} or {round_.side_b}.",
            )
        if round_.status == RoundStatus.CANCELED:
            return OperationResult.fail(
                RoundError.ALREADY_CANCELED,
                f"Cannot set result for a canceled {self._kind.value}.",
            )
        if round_.status == RoundStatus.DONE:
            return OperationResult.fail(
                RoundError.ALREADY_FINAL,
                f"{self._noun} result has already been set.",
            )

        if round_.status == RoundStatus.PENDING:
            await self._close_locked(round_)

        updated = await self._rounds.set_winner(round_id, winner_key)
        result = await self._pay_out(round_id, winner_key)

        ROUND_TRANSITIONS.labels(kind=self._kind.value, status=RoundStatus.DONE.value).inc()
        self._logger.for_round(round_id, "round_settled").info(
            "Round settled",
            extra={
                "winner": winner_key,
                "winners": result["winners"],
                "amount": result["total_paid"],
                "failed": result["failed"],
                "unrecorded": len(result["unrecorded_wager_ids"]),
            },
        )
        label = self._validator.describe_side(updated or round_, winner_key)
        data = {"round": updated, "winner": winner_key, **result}
        if result["failed"]:
            return OperationResult(
                success=False,
                message=(
                    f"{self._noun} #{round_id} result set to {label}, but "
                    f"{result['failed']} payouts failed."
                ),
                data=data,
            )
        if result["unrecorded_wager_ids"]:
            return OperationResult(
                success=False,
                message=(
                    f"{self._noun} #{round_id} result set to {label} and payouts "
                    f"processed, but {len(result['unrecorded_wager_ids'])} wager "
                    "outcomes were not saved."
                ),
                data=data,
            )
        return OperationResult.ok(
            f"{self._noun} #{round_id} result set to {label}. Payouts processed.",
            **data,
        )

    async def _pay_out(self, round_id: RoundId, winner_key: str) -> Dict[str, Any]:
        wagers = await self._wagers.list_by_round(round_id)
        winners: List[Wager] = []
        losers: List[Wager] = []
        failed_ids: List[int] = []
        unrecorded_ids: List[int] = []
        total_paid = 0
        for wager in wagers:
            if wager.outcome != WagerOutcome.PENDING:
                continue
            if wager.side == winner_key:
                payout = wager.amount * self._payout_multiplier
                if not await self._credit(wager, payout, TransactionType.PAYOUT):
                    failed_ids.append(wager.id)
                    continue
                total_paid += payout
                winners.append(wager)
                outcome = WagerOutcome.WIN
            else:
                losers.append(wager)
                outcome = WagerOutcome.LOSS
            if not await self._record_outcome(wager, outcome):
                unrecorded_ids.append(wager.id)
        return {
            "winners": len(winners),
            "losers": len(losers),
            "total_paid": total_paid,
            "failed": len(failed_ids),
            "failed_wager_ids": failed_ids,
            "unrecorded_wager_ids": unrecorded_ids,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_round(self, round_id: RoundId) -> Optional[Round]:
        return await self._load(round_id)

    async def get_active_round(self) -> Optional[Round]:
        """Most recently created round that is still ``pending`` or ``started``."""

        active = await self._rounds.list_by_status(
            [RoundStatus.PENDING, RoundStatus.STARTED], 1, kind=self._kind
        )
        return active[0] if active else None

    async def list_rounds(self, filter_: str = "all", limit: Optional[int] = None) -> List[Round]:
        limit = limit if limit is not None else self._default_list_limit
        if filter_ == "active":
            return await self._rounds.list_by_status(
                [RoundStatus.PENDING, RoundStatus.STARTED], limit, kind=self._kind
            )
        if filter_ == "completed":
            return await self._rounds.list_by_status([RoundStatus.DONE], limit, kind=self._kind)
        if filter_ == "all":
            return await self._rounds.list_recent(limit, kind=self._kind)
        raise ValueError(f"Unknown round filter {filter_!r}; expected one of {ROUND_FILTERS}")

    async def get_round_wagers(self, round_id: RoundId) -> List[Wager]:
        if await self._load(round_id) is None:
            return []
        return await self._wagers.list_by_round(round_id)

    async def get_user_wagers(self, user_id: UserId, limit: int = 20) -> List[Wager]:
        return await self._wagers.list_by_user(str(user_id), limit)

    async def get_round_summary(self, round_id: RoundId) -> OperationResult:
        round_ = await self._load(round_id)
        if round_ is None:
            return self._not_found(round_id)
        wagers = await self._wagers.list_by_round(round_id)
        statistics = RoundStatistics.from_wagers(round_, wagers)
        return OperationResult.ok(
            self._validator.describe_round(round_),
            round=round_,
            wagers=wagers,
            statistics=statistics,
            remaining_seconds=self._remaining(round_),
        )


__all__ = [
    "DEFAULT_BETTING_WINDOW_SECONDS",
    "DEFAULT_PAYOUT_MULTIPLIER",
    "ROUND_FILTERS",
    "RoundLifecycleEngine",
    "RoundLockRegistry",
]
