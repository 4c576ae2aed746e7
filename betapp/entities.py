"""Domain types shared by the round stores, the ledger and the lifecycle engine."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

UserId = str
RoundId = int
WagerId = int
Money = int


class RoundKind(str, Enum):
    MATCH = "match"
    EVENT = "event"


class MatchType(str, Enum):
    TEAM = "team"
    PARTICIPANT = "participant"


class RoundStatus(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    DONE = "done"
    CANCELED = "canceled"

    @property
    def is_final(self) -> bool:
        return self in (RoundStatus.DONE, RoundStatus.CANCELED)

    @property
    def is_active(self) -> bool:
        return self in (RoundStatus.PENDING, RoundStatus.STARTED)


ROUND_TRANSITIONS: Mapping[RoundStatus, FrozenSet[RoundStatus]] = {
    RoundStatus.PENDING: frozenset({RoundStatus.STARTED, RoundStatus.CANCELED}),
    RoundStatus.STARTED: frozenset({RoundStatus.DONE, RoundStatus.CANCELED}),
    RoundStatus.DONE: frozenset(),
    RoundStatus.CANCELED: frozenset(),
}


def can_transition(current: RoundStatus, target: RoundStatus) -> bool:
    return target in ROUND_TRANSITIONS.get(RoundStatus(current), frozenset())


class WagerOutcome(str, Enum):
    PENDING = "pending"
    WIN = "win"
    LOSS = "loss"
    REFUND = "refund"


class TransactionType(str, Enum):
    INIT = "init"
    BET = "bet"
    PAYOUT = "payout"
    REFUND = "refund"
    DONATE = "donate"


class RoundError(str, Enum):
    """Business-rule failures reported through :class:`OperationResult`."""

    NOT_FOUND = "not_found"
    INVALID_SIDES = "invalid_sides"
    INVALID_SIDE = "invalid_side"
    INVALID_AMOUNT = "invalid_amount"
    DUPLICATE_WAGER = "duplicate_wager"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    BETTING_CLOSED = "betting_closed"
    ALREADY_FINAL = "already_final"
    ALREADY_CANCELED = "already_canceled"


# ---------------------------------------------------------------------------
# Sides
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TeamName:
    """A free-text side label; equality ignores case and outer whitespace."""

    label: str

    @property
    def key(self) -> str:
        return self.label.strip()

    @property
    def display(self) -> str:
        return self.label.strip()

    def _folded(self) -> str:
        return self.label.strip().casefold()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TeamName):
            return self._folded() == other._folded()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._folded())


@dataclass(frozen=True)
class ParticipantId:
    """A user identity used as a side; equality is identity only."""

    user_id: UserId
    display_name: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_id", str(self.user_id).strip())

    @property
    def key(self) -> str:
        return str(self.user_id)

    @property
    def display(self) -> str:
        return self.display_name or str(self.user_id)


Side = Union[TeamName, ParticipantId]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Round:
    id: RoundId
    kind: RoundKind
    side_a: str
    side_b: str
    status: RoundStatus
    created_at: dt.datetime
    updated_at: dt.datetime
    started_at: Optional[dt.datetime] = None
    winner: Optional[str] = None
    match_type: Optional[MatchType] = None
    side_a_id: Optional[UserId] = None
    side_b_id: Optional[UserId] = None
    title: Optional[str] = None
    description: Optional[str] = None
    participant_id: Optional[UserId] = None

    @property
    def labels(self) -> Tuple[str, str]:
        return self.side_a, self.side_b

    @property
    def side_keys(self) -> Tuple[str, str]:
        """Values stored on wagers (and as ``winner``) for each side."""

        if self.match_type == MatchType.PARTICIPANT:
            return str(self.side_a_id), str(self.side_b_id)
        return self.side_a, self.side_b

    def label_for(self, side_key: Optional[str]) -> Optional[str]:
        if side_key is None:
            return None
        for key, label in zip(self.side_keys, self.labels):
            if key == side_key:
                return label
        return side_key

    @property
    def heading(self) -> str:
        if self.kind == RoundKind.EVENT and self.title:
            return self.title
        return f"{self.side_a} vs {self.side_b}"


@dataclass(slots=True)
class Wager:
    id: WagerId
    round_id: RoundId
    user_id: UserId
    side: str
    amount: Money
    outcome: WagerOutcome
    created_at: dt.datetime
    user_name: Optional[str] = None


@dataclass(slots=True)
class LedgerTransaction:
    id: int
    user_id: UserId
    amount: Money
    type: TransactionType
    reference_id: Optional[int]
    created_at: dt.datetime


@dataclass(slots=True)
class SideTally:
    key: str
    label: str
    count: int = 0
    amount: Money = 0
    wagers: List[Wager] = field(default_factory=list)

    def top(self, limit: int) -> List[Wager]:
        return sorted(self.wagers, key=lambda wager: wager.amount, reverse=True)[:limit]

    def as_dict(self) -> Dict[str, Any]:
        return {"side": self.key, "label": self.label, "count": self.count, "amount": self.amount}


@dataclass(slots=True)
class RoundStatistics:
    """Per-side wager counts and stakes; derived on read, never persisted."""

    sides: Tuple[SideTally, SideTally]

    @classmethod
    def from_wagers(cls, round_: Round, wagers: Iterable[Wager]) -> "RoundStatistics":
        tallies = tuple(
            SideTally(key=key, label=label)
            for key, label in zip(round_.side_keys, round_.labels)
        )
        by_key = {tally.key: tally for tally in tallies}
        for wager in wagers:
            tally = by_key.get(wager.side)
            if tally is None:
                continue
            tally.count += 1
            tally.amount += wager.amount
            tally.wagers.append(wager)
        return cls(sides=tallies)  # type: ignore[arg-type]

    @property
    def total_count(self) -> int:
        return sum(tally.count for tally in self.sides)

    @property
    def total_amount(self) -> Money:
        return sum(tally.amount for tally in self.sides)

    def share(self, index: int) -> float:
        """Percentage of the pool staked on side ``index``; 50/50 when empty."""

        total = self.total_amount
        if total <= 0:
            return 50.0
        return self.sides[index].amount * 100.0 / total

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total_count,
            "total_amount": self.total_amount,
            "sides": [tally.as_dict() for tally in self.sides],
        }


@dataclass(slots=True)
class OperationResult:
    """Uniform result of every public engine operation."""

    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[RoundError] = None

    @classmethod
    def ok(cls, message: str, **data: Any) -> "OperationResult":
        return cls(success=True, message=message, data=data or None)

    @classmethod
    def fail(cls, error: RoundError, message: str, **data: Any) -> "OperationResult":
        return cls(success=False, message=message, data=data or None, error=error)

    def __bool__(self) -> bool:
        return self.success
