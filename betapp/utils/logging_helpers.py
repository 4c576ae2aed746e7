"""Context-carrying loggers for round, wager and ledger events.

Every record emitted through :class:`ContextLoggerAdapter` names its subject
(``round_id``, ``user_id``, ``wager_id``) and what happened (``event_type``)
plus which service reported it (``request_category``). Keys that do not apply
are present as ``None`` so consumers can rely on one schema.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping, Optional, Tuple, Union


LoggerLike = Union[logging.Logger, logging.LoggerAdapter]

SUBJECT_KEYS: Tuple[str, ...] = ("round_id", "user_id", "wager_id")
REQUIRED_LOG_KEYS: Tuple[str, ...] = SUBJECT_KEYS + ("event_type", "request_category")


class ContextLoggerAdapter(logging.LoggerAdapter):
    """Adapter whose bound context sits under any call-site ``extra``."""

    def __init__(self, logger: logging.Logger, extra: Optional[Mapping[str, Any]] = None):
        context = dict.fromkeys(REQUIRED_LOG_KEYS)
        context.update(extra or {})
        super().__init__(logger, context)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def bind(self, **context: Any) -> "ContextLoggerAdapter":
        return ContextLoggerAdapter(self.logger, {**self.extra, **context})

    def getChild(self, suffix: str) -> "ContextLoggerAdapter":  # noqa: N802
        return ContextLoggerAdapter(self.logger.getChild(suffix), self.extra)

    def for_round(self, round_id: Any, event_type: str) -> "ContextLoggerAdapter":
        return self.bind(round_id=round_id, event_type=event_type)

    def for_wager(self, wager: Any, event_type: str) -> "ContextLoggerAdapter":
        """Bind the round, owner and id of ``wager``."""

        return self.bind(
            round_id=wager.round_id,
            user_id=wager.user_id,
            wager_id=wager.id,
            event_type=event_type,
        )


def _as_adapter(logger: LoggerLike) -> ContextLoggerAdapter:
    if isinstance(logger, ContextLoggerAdapter):
        return logger
    if isinstance(logger, logging.LoggerAdapter):
        return ContextLoggerAdapter(logger.logger, logger.extra)
    return ContextLoggerAdapter(logger)


def add_context(logger: LoggerLike, **context: Any) -> ContextLoggerAdapter:
    return _as_adapter(logger).bind(**context)


def enforce_context(
    logger: LoggerLike, default_ctx: Optional[Mapping[str, Any]] = None
) -> ContextLoggerAdapter:
    """Service-boundary wrapper: every key in :data:`REQUIRED_LOG_KEYS` is set."""

    return _as_adapter(logger).bind(**(default_ctx or {}))


__all__ = [
    "ContextLoggerAdapter",
    "LoggerLike",
    "REQUIRED_LOG_KEYS",
    "SUBJECT_KEYS",
    "add_context",
    "enforce_context",
]
