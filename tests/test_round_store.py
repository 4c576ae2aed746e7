"""Tests for the SQL round and wager repositories."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from betapp.entities import MatchType, RoundKind, RoundStatus, WagerOutcome
from betapp.exceptions import (
    InvalidTransitionError,
    OutcomeAlreadySetError,
    StoreNotReadyError,
)
from betapp.round_store import Database


def _match_fields(side_a: str = "Red", side_b: str = "Blue"):
    return {
        "kind": RoundKind.MATCH,
        "match_type": MatchType.TEAM,
        "side_a": side_a,
        "side_b": side_b,
    }


def _wager_fields(round_id: int, user_id: str = "u1", side: str = "Red", amount: int = 100):
    return {"round_id": round_id, "user_id": user_id, "side": side, "amount": amount}


@pytest.mark.asyncio
async def test_create_and_get_round_round_trips_fields(round_store, clock):
    created = await round_store.create_round(_match_fields())

    loaded = await round_store.get_round(created.id)

    assert loaded is not None
    assert loaded.status is RoundStatus.PENDING
    assert loaded.match_type is MatchType.TEAM
    assert loaded.labels == ("Red", "Blue")
    assert loaded.created_at == clock.value
    assert loaded.created_at.tzinfo is not None
    assert await round_store.get_round(9999) is None


@pytest.mark.asyncio
async def test_round_ids_are_monotonic(round_store):
    first = await round_store.create_round(_match_fields())
    second = await round_store.create_round(_match_fields("Cats", "Dogs"))

    assert second.id > first.id


@pytest.mark.asyncio
async def test_update_status_stamps_started_at_and_rejects_backward_moves(round_store, clock):
    created = await round_store.create_round(_match_fields())
    clock.advance(30)

    started = await round_store.update_status(created.id, RoundStatus.STARTED)

    assert started.status is RoundStatus.STARTED
    assert started.started_at == clock.value
    with pytest.raises(InvalidTransitionError):
        await round_store.update_status(created.id, RoundStatus.PENDING)
    assert (await round_store.get_round(created.id)).status is RoundStatus.STARTED
    assert await round_store.update_status(9999, RoundStatus.STARTED) is None


@pytest.mark.asyncio
async def test_set_winner_marks_round_done_once(round_store):
    created = await round_store.create_round(_match_fields())
    await round_store.update_status(created.id, RoundStatus.STARTED)

    done = await round_store.set_winner(created.id, "Red")

    assert done.status is RoundStatus.DONE
    assert done.winner == "Red"
    with pytest.raises(InvalidTransitionError):
        await round_store.set_winner(created.id, "Blue")
    with pytest.raises(InvalidTransitionError):
        await round_store.update_status(created.id, RoundStatus.CANCELED)


@pytest.mark.asyncio
async def test_listing_filters_by_status_and_kind(round_store, clock):
    first = await round_store.create_round(_match_fields())
    clock.advance(1)
    second = await round_store.create_round(_match_fields("Cats", "Dogs"))
    clock.advance(1)
    event = await round_store.create_round(
        {"kind": RoundKind.EVENT, "side_a": "Yes", "side_b": "No", "title": "Rain?"}
    )
    await round_store.update_status(first.id, RoundStatus.STARTED)

    pending = await round_store.list_by_status([RoundStatus.PENDING], kind=RoundKind.MATCH)
    active = await round_store.list_by_status(
        [RoundStatus.PENDING, RoundStatus.STARTED], 10, kind=RoundKind.MATCH
    )
    recent = await round_store.list_recent(2)

    assert [round_.id for round_ in pending] == [second.id]
    assert [round_.id for round_ in active] == [second.id, first.id]
    assert [round_.id for round_ in recent] == [event.id, second.id]
    assert (await round_store.list_recent(5, kind=RoundKind.EVENT))[0].title == "Rain?"


@pytest.mark.asyncio
async def test_wager_store_round_trip_and_duplicate_guard(round_store, wager_store):
    round_ = await round_store.create_round(_match_fields())

    wager = await wager_store.create_wager(_wager_fields(round_.id))

    assert wager.outcome is WagerOutcome.PENDING
    assert await wager_store.has_wager("u1", round_.id)
    assert not await wager_store.has_wager("u2", round_.id)
    with pytest.raises(IntegrityError):
        await wager_store.create_wager(_wager_fields(round_.id, side="Blue"))
    assert len(await wager_store.list_by_round(round_.id)) == 1


@pytest.mark.asyncio
async def test_update_outcome_is_written_once(round_store, wager_store):
    round_ = await round_store.create_round(_match_fields())
    wager = await wager_store.create_wager(_wager_fields(round_.id))

    updated = await wager_store.update_outcome(wager.id, WagerOutcome.WIN)

    assert updated.outcome is WagerOutcome.WIN
    with pytest.raises(OutcomeAlreadySetError):
        await wager_store.update_outcome(wager.id, WagerOutcome.REFUND)
    assert await wager_store.update_outcome(9999, WagerOutcome.LOSS) is None


@pytest.mark.asyncio
async def test_staged_wager_rolls_back_when_body_fails(round_store, wager_store):
    round_ = await round_store.create_round(_match_fields())

    with pytest.raises(RuntimeError):
        async with wager_store.staged_wager(_wager_fields(round_.id)) as wager:
            assert wager.id is not None
            raise RuntimeError("debit failed")

    assert await wager_store.list_by_round(round_.id) == []
    assert not await wager_store.has_wager("u1", round_.id)


@pytest.mark.asyncio
async def test_list_by_user_returns_newest_first(round_store, wager_store, clock):
    first = await round_store.create_round(_match_fields())
    second = await round_store.create_round(_match_fields("Cats", "Dogs"))
    await wager_store.create_wager(_wager_fields(first.id))
    clock.advance(5)
    await wager_store.create_wager(_wager_fields(second.id, side="Cats"))

    wagers = await wager_store.list_by_user("u1", 10)

    assert [wager.round_id for wager in wagers] == [second.id, first.id]


@pytest.mark.asyncio
async def test_database_creates_sqlite_directory_and_refuses_use_after_close(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'nested' / 'dir' / 'bets.sqlite3'}")

    await database.ensure_ready()
    assert (tmp_path / "nested" / "dir").is_dir()

    await database.close()
    with pytest.raises(StoreNotReadyError):
        async with database.session():
            pass
