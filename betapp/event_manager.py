"""Events: yes/no propositions, optionally about one participant."""

from __future__ import annotations

from typing import Any, Optional

from betapp.entities import OperationResult, RoundKind, UserId
from betapp.lifecycle import RoundLifecycleEngine
from betapp.sides import EventSideValidator


class EventManager(RoundLifecycleEngine):
    """Lifecycle engine bound to events; several events may be open at once."""

    def __init__(self, *, validator: Optional[EventSideValidator] = None, **kwargs: Any) -> None:
        self._event_sides = validator if validator is not None else EventSideValidator()
        super().__init__(kind=RoundKind.EVENT, validator=self._event_sides, **kwargs)

    @property
    def event_sides(self) -> EventSideValidator:
        return self._event_sides

    async def create_event(
        self,
        title: str,
        description: Optional[str] = None,
        participant_id: Optional[UserId] = None,
    ) -> OperationResult:
        return await self.create_round(
            self._event_sides.labels,
            {
                "title": title.strip() if title else None,
                "description": description,
                "participant_id": str(participant_id) if participant_id is not None else None,
            },
        )


__all__ = ["EventManager"]
