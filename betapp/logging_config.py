import datetime as dt
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional

from betapp.utils.logging_helpers import SUBJECT_KEYS


# Attribute names every LogRecord carries; anything else came in via ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    return repr(value)


class ContextJsonFormatter(logging.Formatter):
    """One JSON object per record.

    The record's subject ids are grouped under ``subject``, ``event_type`` and
    ``request_category`` become ``event`` and ``category``, and the remaining
    extras (amounts, statuses, counters) land in ``fields``.
    """

    def format(self, record: logging.LogRecord) -> str:
        extras = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        subject = {key: extras.pop(key, None) for key in SUBJECT_KEYS}
        payload: Dict[str, Any] = {
            "timestamp": dt.datetime.fromtimestamp(record.created, dt.timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event": extras.pop("event_type", None),
            "category": extras.pop("request_category", None),
        }
        subject = {key: value for key, value in subject.items() if value is not None}
        if subject:
            payload["subject"] = subject
        if extras:
            payload["fields"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=_jsonable)


def setup_logging(
    level: int = logging.INFO, debug_mode: bool = False, handler: Optional[logging.Handler] = None
) -> logging.Handler:
    """Attach one JSON handler to the root logger and return it.

    Calling it again reuses the handler already installed. SQLAlchemy's engine
    logger and aiosqlite stay at WARNING unless ``debug_mode`` is set.
    """

    root = logging.getLogger()
    installed = next(
        (h for h in root.handlers if isinstance(h.formatter, ContextJsonFormatter)), None
    )
    if installed is None:
        installed = handler or logging.StreamHandler()
        installed.setFormatter(ContextJsonFormatter())
        root.addHandler(installed)
    root.setLevel(logging.DEBUG if debug_mode else level)

    library_level = logging.INFO if debug_mode else logging.WARNING
    for name in ("sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(name).setLevel(library_level)
    return installed
