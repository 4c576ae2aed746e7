"""Startup recovery re-arms or closes rounds left open by a previous run."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from betapp.entities import RoundKind, RoundStatus
from betapp.event_manager import EventManager
from betapp.match_manager import MatchManager
from betapp.recovery_service import RecoveryService


@pytest.mark.asyncio
async def test_startup_recovery_rearms_and_closes(
    engine_kwargs, scheduler, clock, match_manager, event_manager
):
    expired = (await match_manager.create_team_match("Red", "Blue")).data["round"]
    clock.advance(200)
    fresh = (await match_manager.create_team_match("Cats", "Dogs")).data["round"]
    event = (await event_manager.create_event("Rain?")).data["round"]
    settled = (await match_manager.create_team_match("Ants", "Bees")).data["round"]
    await match_manager.settle_round(settled.id, "Ants")
    clock.advance(150)

    # A restarted process starts with an empty scheduler.
    scheduler.timers.clear()
    scheduler.armed.clear()
    restarted_matches = MatchManager(**engine_kwargs)
    restarted_events = EventManager(**engine_kwargs)
    service = RecoveryService(engines=(restarted_matches, restarted_events))

    stats = await service.run_startup_recovery()

    assert stats["rounds_rearmed"] == 2
    assert stats["rounds_closed"] == 1
    assert stats["engines_failed"] == 0
    assert stats["match_rearmed"] == 1
    assert stats["event_rearmed"] == 1
    assert sorted(scheduler.armed) == sorted([(fresh.id, 150), (event.id, 150)])
    assert (await restarted_matches.get_round(expired.id)).status is RoundStatus.STARTED
    assert (await restarted_matches.get_round(settled.id)).status is RoundStatus.DONE


@pytest.mark.asyncio
async def test_failing_engine_does_not_block_others(caplog):
    broken = MagicMock()
    broken.kind = RoundKind.MATCH
    broken.rehydrate = AsyncMock(side_effect=RuntimeError("db down"))
    healthy = MagicMock()
    healthy.kind = RoundKind.EVENT
    healthy.rehydrate = AsyncMock(return_value={"rearmed": 3, "closed": 0})
    service = RecoveryService(engines=(broken, healthy), logger=logging.getLogger("test.recovery"))

    caplog.set_level(logging.ERROR, logger="test.recovery")
    stats = await service.run_startup_recovery()

    assert stats["engines_failed"] == 1
    assert stats["rounds_rearmed"] == 3
    assert "match_rearmed" not in stats
    assert any(record.levelno == logging.ERROR for record in caplog.records)
