import pytest

from betapp.entities import MatchType, ParticipantId, RoundError, RoundKind, TeamName


@pytest.mark.asyncio
async def test_team_match_is_stored_as_team_round(match_manager):
    result = await match_manager.create_team_match("  Red ", "Blue")

    round_ = result.data["round"]
    assert round_.kind is RoundKind.MATCH
    assert round_.match_type is MatchType.TEAM
    assert round_.labels == ("Red", "Blue")
    assert "Red vs Blue" in result.message
    assert "5m 0s" in result.message


@pytest.mark.asyncio
async def test_participant_match_keys_sides_by_user_id(match_manager, ledger):
    result = await match_manager.create_participant_match(11, 22, name_a="Ann", name_b="Bob")
    round_ = result.data["round"]

    wager = await match_manager.place_wager(round_.id, "u1", "22", 100)
    by_name = await match_manager.place_wager(round_.id, "u2", "Bob", 100)
    settled = await match_manager.settle_round(round_.id, ParticipantId(22))

    assert round_.match_type is MatchType.PARTICIPANT
    assert (round_.side_a_id, round_.side_b_id) == ("11", "22")
    assert "(1v1)" in result.message
    assert wager.success and wager.data["wager"].side == "22"
    assert "Bob" in wager.message
    assert by_name.error is RoundError.INVALID_SIDE
    assert settled.success
    assert settled.data["winner"] == "22"
    assert await ledger.get_balance("u1") == 1100


@pytest.mark.asyncio
async def test_participant_cannot_face_themselves(match_manager):
    result = await match_manager.create_participant_match(11, "11", name_a="Ann", name_b="Other")

    assert result.error is RoundError.INVALID_SIDES


@pytest.mark.asyncio
async def test_mixed_side_types_are_rejected(match_manager):
    result = await match_manager.create_round((TeamName("Red"), ParticipantId(5)))

    assert result.error is RoundError.INVALID_SIDES


@pytest.mark.asyncio
async def test_match_engine_ignores_event_rounds(match_manager, event_manager):
    event = (await event_manager.create_event("Will it rain?")).data["round"]

    assert await match_manager.get_round(event.id) is None
    result = await match_manager.place_wager(event.id, "u1", "Yes", 10)
    assert result.error is RoundError.NOT_FOUND
    assert await match_manager.list_rounds() == []
