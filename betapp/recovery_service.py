"""Startup recovery: rebuild auto-close timers from persisted rounds."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

from betapp.lifecycle import RoundLifecycleEngine
from betapp.utils.logging_helpers import LoggerLike


class RecoveryService:
    """Coordinate recovery of persisted state after a restart.

    Timers live only in memory, so every ``pending`` round either gets its
    remaining window re-armed or, when the window ran out while the process
    was down, is closed right away.
    """

    def __init__(
        self,
        *,
        engines: Sequence[RoundLifecycleEngine],
        logger: Optional[LoggerLike] = None,
    ) -> None:
        self._engines = tuple(engines)
        self._logger = logger or logging.getLogger(__name__)

    async def run_startup_recovery(self) -> Dict[str, Any]:
        """Execute the startup recovery workflow and return summary stats."""

        stats: Dict[str, Any] = {
            "rounds_rearmed": 0,
            "rounds_closed": 0,
            "engines_failed": 0,
        }

        self._logger.info(
            "Starting round recovery sequence",
            extra={"event_type": "startup_recovery_start"},
        )

        for engine in self._engines:
            try:
                engine_stats = await engine.rehydrate()
            except Exception:
                stats["engines_failed"] += 1
                self._logger.exception(
                    "Failed to rehydrate rounds during startup",
                    extra={"round_kind": engine.kind.value},
                )
                continue
            stats["rounds_rearmed"] += engine_stats.get("rearmed", 0)
            stats["rounds_closed"] += engine_stats.get("closed", 0)
            stats[f"{engine.kind.value}_rearmed"] = engine_stats.get("rearmed", 0)
            stats[f"{engine.kind.value}_closed"] = engine_stats.get("closed", 0)

        stats_with_event = {**stats, "event_type": "startup_recovery_complete"}
        self._logger.info("Startup recovery completed", extra=stats_with_event)
        return stats


__all__ = ["RecoveryService"]
