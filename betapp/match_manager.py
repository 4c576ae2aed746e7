"""Matches: team-vs-team or participant-vs-participant rounds."""

from __future__ import annotations

from typing import Any, Optional

from betapp.entities import OperationResult, ParticipantId, RoundKind, TeamName, UserId
from betapp.lifecycle import RoundLifecycleEngine
from betapp.sides import MatchSideValidator


class MatchManager(RoundLifecycleEngine):
    """Lifecycle engine bound to matches and the match side rules."""

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("validator", MatchSideValidator())
        super().__init__(kind=RoundKind.MATCH, **kwargs)

    async def create_team_match(self, team_a: str, team_b: str) -> OperationResult:
        return await self.create_round((TeamName(team_a), TeamName(team_b)))

    async def create_participant_match(
        self,
        user_a: UserId,
        user_b: UserId,
        *,
        name_a: Optional[str] = None,
        name_b: Optional[str] = None,
    ) -> OperationResult:
        """Open a 1v1 match; bets and results refer to the users by id."""

        return await self.create_round(
            (
                ParticipantId(user_a, name_a or str(user_a)),
                ParticipantId(user_b, name_b or str(user_b)),
            )
        )


__all__ = ["MatchManager"]
