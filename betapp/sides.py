"""Side value handling for each kind of round.

The lifecycle engine never compares side strings itself. It asks the
:class:`SideValidator` injected for its round kind whether a pair of sides
may open a round, and which canonical side key a user supplied value maps to.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence, Tuple

from betapp.entities import MatchType, ParticipantId, Round, RoundKind, Side, TeamName


class SideValidator(ABC):
    """Base strategy; subclasses decide how raw input becomes a :data:`Side`."""

    kind: RoundKind

    @abstractmethod
    def coerce(self, raw: Any) -> Optional[Side]:
        pass

    @abstractmethod
    def round_sides(self, round_: Round) -> Tuple[Side, Side]:
        pass

    def validate_pair(self, side_a: Any, side_b: Any) -> bool:
        first = self.coerce(side_a)
        second = self.coerce(side_b)
        if first is None or second is None:
            return False
        return first != second

    def resolve(self, round_: Round, raw: Any) -> Optional[str]:
        """Return the canonical side key of ``round_`` matching ``raw``."""

        candidate = self.coerce(raw)
        if candidate is None:
            return None
        for side, key in zip(self.round_sides(round_), round_.side_keys):
            if side == candidate:
                return key
        return None

    def describe_side(self, round_: Round, side_key: Optional[str]) -> str:
        label = round_.label_for(side_key)
        return label if label is not None else "-"

    def describe_round(self, round_: Round) -> str:
        return round_.heading


class TeamSideValidator(SideValidator):
    kind = RoundKind.MATCH

    def coerce(self, raw: Any) -> Optional[Side]:
        if isinstance(raw, TeamName):
            return raw if raw.key else None
        if raw is None or isinstance(raw, ParticipantId):
            return None
        text = str(raw).strip()
        return TeamName(text) if text else None

    def round_sides(self, round_: Round) -> Tuple[Side, Side]:
        return TeamName(round_.side_a), TeamName(round_.side_b)


class ParticipantSideValidator(SideValidator):
    kind = RoundKind.MATCH

    def coerce(self, raw: Any) -> Optional[Side]:
        if isinstance(raw, ParticipantId):
            return raw if raw.user_id else None
        if raw is None or isinstance(raw, (TeamName, bool)):
            return None
        text = str(raw).strip()
        return ParticipantId(text) if text else None

    def round_sides(self, round_: Round) -> Tuple[Side, Side]:
        return (
            ParticipantId(round_.side_a_id or "", round_.side_a),
            ParticipantId(round_.side_b_id or "", round_.side_b),
        )

    def describe_round(self, round_: Round) -> str:
        return f"{round_.side_a} vs {round_.side_b} (1v1)"


class MatchSideValidator(SideValidator):
    """Dispatches to the team or participant strategy by ``match_type``."""

    kind = RoundKind.MATCH

    def __init__(self) -> None:
        self._strategies: Dict[MatchType, SideValidator] = {
            MatchType.TEAM: TeamSideValidator(),
            MatchType.PARTICIPANT: ParticipantSideValidator(),
        }

    def for_type(self, match_type: Optional[MatchType]) -> SideValidator:
        return self._strategies[MatchType(match_type or MatchType.TEAM)]

    def coerce(self, raw: Any) -> Optional[Side]:
        if isinstance(raw, ParticipantId):
            return self.for_type(MatchType.PARTICIPANT).coerce(raw)
        return self.for_type(MatchType.TEAM).coerce(raw)

    def validate_pair(self, side_a: Any, side_b: Any) -> bool:
        if isinstance(side_a, ParticipantId) != isinstance(side_b, ParticipantId):
            return False
        return super().validate_pair(side_a, side_b)

    def round_sides(self, round_: Round) -> Tuple[Side, Side]:
        return self.for_type(round_.match_type).round_sides(round_)

    def resolve(self, round_: Round, raw: Any) -> Optional[str]:
        return self.for_type(round_.match_type).resolve(round_, raw)

    def describe_round(self, round_: Round) -> str:
        return self.for_type(round_.match_type).describe_round(round_)


class EventSideValidator(SideValidator):
    """Fixed two-choice proposition, ``Yes``/``No`` unless configured otherwise."""

    kind = RoundKind.EVENT

    def __init__(self, labels: Sequence[str] = ("Yes", "No")) -> None:
        if len(labels) != 2:
            raise ValueError("An event needs exactly two side labels")
        first, second = (str(label).strip() for label in labels)
        if TeamName(first) == TeamName(second):
            raise ValueError("Event side labels must differ")
        self._labels: Tuple[str, str] = (first, second)

    @property
    def labels(self) -> Tuple[str, str]:
        return self._labels

    def coerce(self, raw: Any) -> Optional[Side]:
        if isinstance(raw, TeamName):
            return raw
        if raw is None or isinstance(raw, ParticipantId):
            return None
        text = str(raw).strip()
        return TeamName(text) if text else None

    def round_sides(self, round_: Round) -> Tuple[Side, Side]:
        return TeamName(round_.side_a), TeamName(round_.side_b)

    def describe_round(self, round_: Round) -> str:
        return round_.title or round_.description or f"Event #{round_.id}"


__all__ = [
    "EventSideValidator",
    "MatchSideValidator",
    "ParticipantSideValidator",
    "SideValidator",
    "TeamSideValidator",
]
