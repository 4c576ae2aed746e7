"""In-process timers that close rounds when their betting window elapses."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from betapp.entities import RoundId
from betapp.metrics import TIMERS_FIRED
from betapp.utils.logging_helpers import LoggerLike


logger = logging.getLogger(__name__)

TimerCallback = Callable[[RoundId], Awaitable[Any]]


class RoundScheduler(Protocol):
    """At most one pending wake-up per round id."""

    def arm(self, round_id: RoundId, delay_seconds: float, callback: TimerCallback) -> None:
        ...

    def disarm(self, round_id: RoundId) -> None:
        ...

    async def shutdown(self) -> None:
        ...


class AsyncioRoundScheduler:
    """:class:`RoundScheduler` built on ``asyncio`` tasks keyed by round id."""

    def __init__(self, *, logger_: Optional[LoggerLike] = None) -> None:
        self._timers: Dict[RoundId, asyncio.Task[None]] = {}
        self._logger = logger_ or logger

    def arm(self, round_id: RoundId, delay_seconds: float, callback: TimerCallback) -> None:
        self.disarm(round_id)
        delay = max(0.0, float(delay_seconds))
        self._timers[round_id] = asyncio.create_task(
            self._fire(round_id, delay, callback),
            name=f"round-timer-{round_id}",
        )
        self._logger.debug(
            "Round timer armed",
            extra={"event_type": "timer_armed", "round_id": round_id, "delay": delay},
        )

    def disarm(self, round_id: RoundId) -> None:
        task = self._timers.pop(round_id, None)
        if task is not None and not task.done():
            task.cancel()
            self._logger.debug(
                "Round timer disarmed",
                extra={"event_type": "timer_disarmed", "round_id": round_id},
            )

    def is_armed(self, round_id: RoundId) -> bool:
        task = self._timers.get(round_id)
        return task is not None and not task.done()

    def armed_rounds(self) -> List[RoundId]:
        return [round_id for round_id, task in self._timers.items() if not task.done()]

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _fire(self, round_id: RoundId, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        # Detach first so the callback's own disarm() does not cancel this task.
        if self._timers.get(round_id) is asyncio.current_task():
            del self._timers[round_id]
        TIMERS_FIRED.inc()
        self._logger.info(
            "Round timer fired",
            extra={"event_type": "timer_fired", "round_id": round_id},
        )
        try:
            await callback(round_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception(
                "Auto-close callback failed",
                extra={"event_type": "timer_failed", "round_id": round_id},
            )


__all__ = ["AsyncioRoundScheduler", "RoundScheduler", "TimerCallback"]
