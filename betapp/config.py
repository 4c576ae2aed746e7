import json
import logging
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


logger = logging.getLogger(__name__)


_BASE_DIR = Path(__file__).resolve().parent.parent
_DEFAULT_CONFIG_DIR = _BASE_DIR / "config"
_DEFAULT_GAME_CONSTANTS_PATH = _DEFAULT_CONFIG_DIR / "game_constants.yaml"
_DEFAULT_SYSTEM_CONSTANTS_PATH = _DEFAULT_CONFIG_DIR / "system_constants.json"

_DEFAULT_GAME_CONSTANTS_DATA: Dict[str, Any] = {
    "betting": {
        "window_seconds": 300,
        "payout_multiplier": 2,
        "starting_balance": 1000,
        "top_bettors_shown": 3,
    },
    "history": {
        "default_limit": 5,
        "list_limit": 10,
        "transactions_limit": 10,
        "leaderboard_limit": 5,
        "user_wagers_limit": 20,
    },
    "ui": {
        "currency_name": "PunaCoins",
        "event_sides": ["Yes", "No"],
    },
    "redis": {
        "balance_key_prefix": "betbot:balance:",
        "leaderboard_key": "betbot:leaderboard",
        "names_key": "betbot:names",
    },
}

_DEFAULT_SYSTEM_CONSTANTS_DATA: Dict[str, Any] = {
    "default_timezone_name": "UTC",
    "default_data_dir": "data",
    "default_sqlite_filename": "betting.sqlite3",
}


def _resolve_config_path(candidate: Optional[str], default: Path) -> Path:
    if not candidate:
        return default
    path = Path(candidate)
    if not path.is_absolute():
        path = _BASE_DIR / path
    return path


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(dict(base[key]), value)
        else:
            base[key] = value
    return base


class GameConstants:
    """Tunable wagering constants loaded from YAML on top of built-in defaults."""

    def __init__(
        self,
        path: Optional[str] = None,
        *,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._path: Path = _resolve_config_path(
            path or os.getenv("BETBOT_GAME_CONSTANTS_FILE"),
            _DEFAULT_GAME_CONSTANTS_PATH,
        )
        self._defaults: Dict[str, Any] = deepcopy(defaults or _DEFAULT_GAME_CONSTANTS_DATA)
        self._data: Dict[str, Any] = {}
        self.reload()

    @property
    def path(self) -> Path:
        return self._path

    def reload(self) -> None:
        raw_data: Dict[str, Any] = {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
                if not isinstance(loaded, dict):
                    logger.warning(
                        "Game constants file did not contain a mapping; using defaults.",
                        extra={
                            "category": "config",
                            "config_path": str(self._path),
                            "stage": "game_constants_load",
                            "error_type": "InvalidMapping",
                        },
                    )
                else:
                    raw_data = loaded
        except FileNotFoundError:
            logger.warning(
                "Game constants file not found; using default values.",
                extra={
                    "category": "config",
                    "config_path": str(self._path),
                    "stage": "game_constants_load",
                    "error_type": "FileNotFoundError",
                },
            )
        except yaml.YAMLError as exc:
            logger.warning(
                "Failed to parse game constants file; using defaults.",
                extra={
                    "category": "config",
                    "config_path": str(self._path),
                    "stage": "game_constants_load",
                    "error_type": type(exc).__name__,
                },
                exc_info=True,
            )

        merged = deepcopy(self._defaults)
        if raw_data:
            merged = _deep_merge(merged, raw_data)
        self._data = merged

    def get(self, key: str, default: Any = None) -> Any:
        return deepcopy(self._data.get(key, default))

    def section(self, key: str) -> Dict[str, Any]:
        section = self._data.get(key, {})
        if isinstance(section, dict):
            return deepcopy(section)
        return {}

    @property
    def betting(self) -> Dict[str, Any]:
        return self.section("betting")

    @property
    def history(self) -> Dict[str, Any]:
        return self.section("history")

    @property
    def ui(self) -> Dict[str, Any]:
        return self.section("ui")

    @property
    def redis(self) -> Dict[str, Any]:
        return self.section("redis")


def _load_system_constants() -> Dict[str, Any]:
    resolved_path = _resolve_config_path(
        os.getenv("BETBOT_SYSTEM_CONSTANTS_FILE"),
        _DEFAULT_SYSTEM_CONSTANTS_PATH,
    )
    loaded: Dict[str, Any] = {}
    try:
        with resolved_path.open("r", encoding="utf-8") as handle:
            parsed = json.load(handle)
            if isinstance(parsed, dict):
                loaded = parsed
            else:
                logger.warning(
                    "System constants file did not contain a JSON object; ignoring it.",
                    extra={
                        "category": "config",
                        "config_path": str(resolved_path),
                        "stage": "system_constants_load",
                        "error_type": "InvalidMapping",
                    },
                )
    except FileNotFoundError:
        logger.warning(
            "System constants file not found; using built-in defaults.",
            extra={
                "category": "config",
                "config_path": str(resolved_path),
                "stage": "system_constants_load",
                "error_type": "FileNotFoundError",
            },
        )
    except json.JSONDecodeError as exc:
        logger.warning(
            "Failed to parse system constants file; using defaults.",
            extra={
                "category": "config",
                "config_path": str(resolved_path),
                "stage": "system_constants_load",
                "error_type": type(exc).__name__,
            },
            exc_info=True,
        )
    merged = deepcopy(_DEFAULT_SYSTEM_CONSTANTS_DATA)
    for key, value in loaded.items():
        if key in merged:
            merged[key] = value
    return merged


_SYSTEM_CONSTANTS = _load_system_constants()

DEFAULT_TIMEZONE_NAME = _SYSTEM_CONSTANTS["default_timezone_name"]
DEFAULT_DATA_DIR = _SYSTEM_CONSTANTS["default_data_dir"]
DEFAULT_SQLITE_FILENAME = _SYSTEM_CONSTANTS["default_sqlite_filename"]


GAME_CONSTANTS = GameConstants()


def get_game_constants() -> GameConstants:
    return GAME_CONSTANTS


class Config:
    def __init__(self, constants: Optional[GameConstants] = None):
        self.constants: GameConstants = constants or GAME_CONSTANTS
        betting = self.constants.betting

        self.DEBUG: bool = os.getenv("BETBOT_DEBUG", "").strip().lower() in {
            "1",
            "true",
            "yes",
            "on",
        }
        self.LOG_LEVEL: str = os.getenv("BETBOT_LOG_LEVEL", "INFO").strip().upper() or "INFO"

        self.REDIS_HOST: str = os.getenv("BETBOT_REDIS_HOST", default="localhost")
        self.REDIS_PORT: int = self._parse_int_env(
            os.getenv("BETBOT_REDIS_PORT"), default=6379, env_var="BETBOT_REDIS_PORT"
        )
        self.REDIS_PASS: str = os.getenv("BETBOT_REDIS_PASS", default="")
        self.REDIS_DB: int = self._parse_int_env(
            os.getenv("BETBOT_REDIS_DB"), default=0, env_var="BETBOT_REDIS_DB"
        )

        database_url_env = os.getenv("BETBOT_DATABASE_URL", "").strip()
        if database_url_env:
            self.DATABASE_URL = database_url_env
        else:
            data_dir_env = os.getenv("BETBOT_DATA_DIR", "").strip()
            data_dir = Path(data_dir_env) if data_dir_env else _BASE_DIR / DEFAULT_DATA_DIR
            self.DATABASE_URL = (
                f"sqlite+aiosqlite:///{data_dir / DEFAULT_SQLITE_FILENAME}"
            )
        self.DATABASE_ECHO: bool = os.getenv("BETBOT_DATABASE_ECHO", "").strip() == "1"

        default_window = int(betting.get("window_seconds", 300))
        parsed_window = self._parse_positive_int(
            os.getenv("BETBOT_BETTING_WINDOW_SECONDS"),
            env_var="BETBOT_BETTING_WINDOW_SECONDS",
        )
        self.BETTING_WINDOW_SECONDS: int = (
            parsed_window if parsed_window is not None else default_window
        )
        self.PAYOUT_MULTIPLIER: int = int(betting.get("payout_multiplier", 2))
        self.STARTING_BALANCE: int = int(betting.get("starting_balance", 1000))
        self.TIMEZONE_NAME: str = (
            os.getenv("BETBOT_TIMEZONE", "").strip() or DEFAULT_TIMEZONE_NAME
        )

    @staticmethod
    def _parse_positive_int(
        raw_value: Optional[str], *, env_var: Optional[str]
    ) -> Optional[int]:
        if not raw_value:
            return None
        try:
            value = int(raw_value)
        except ValueError:
            logger.warning(
                "Invalid integer value '%s' for %s; ignoring it.",
                raw_value,
                env_var,
            )
            return None
        if value <= 0:
            logger.warning(
                "%s must be greater than zero; ignoring %s.",
                env_var,
                raw_value,
            )
            return None
        return value

    @staticmethod
    def _parse_int_env(
        raw_value: Optional[str], *, default: int, env_var: str
    ) -> int:
        if raw_value is None:
            return default
        raw_value = raw_value.strip()
        if not raw_value:
            return default
        try:
            return int(raw_value)
        except ValueError:
            logger.warning(
                "Invalid integer value '%s' for %s; falling back to default %s.",
                raw_value,
                env_var,
                default,
            )
            return default
