"""Application composition root for the betting engine."""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis.asyncio as aioredis

from betapp.config import Config
from betapp.event_manager import EventManager
from betapp.ledger import RedisLedger, SqlTransactionStore
from betapp.logging_config import setup_logging
from betapp.match_manager import MatchManager
from betapp.recovery_service import RecoveryService
from betapp.round_store import Database, SqlRoundStore, SqlWagerStore
from betapp.round_view import RoundView
from betapp.scheduler import AsyncioRoundScheduler, RoundScheduler
from betapp.sides import EventSideValidator
from betapp.lifecycle import RoundLockRegistry
from betapp.utils.logging_helpers import ContextLoggerAdapter, enforce_context
from betapp.utils.time_utils import now_utc


def _build_redis_client_kwargs(cfg: Config) -> Dict[str, Any]:
    """Return connection settings for the Redis client."""

    return {
        "host": cfg.REDIS_HOST,
        "port": cfg.REDIS_PORT,
        "db": cfg.REDIS_DB,
        "password": cfg.REDIS_PASS or None,
        "socket_connect_timeout": 5,
        "socket_timeout": 5,
        "retry_on_timeout": True,
        "health_check_interval": 30,
    }


def _make_service_logger(
    parent_logger: ContextLoggerAdapter, child_name: str, category: str
) -> ContextLoggerAdapter:
    """Return a child logger enriched with the provided ``category`` context."""

    return enforce_context(
        parent_logger.getChild(child_name), {"request_category": category}
    )


@dataclass(frozen=True)
class ApplicationServices:
    """Container for every dependency the front end needs."""

    logger: ContextLoggerAdapter
    config: Config
    kv_async: aioredis.Redis
    database: Database
    round_store: SqlRoundStore
    wager_store: SqlWagerStore
    transaction_store: SqlTransactionStore
    ledger: RedisLedger
    scheduler: RoundScheduler
    match_manager: MatchManager
    event_manager: EventManager
    recovery_service: RecoveryService
    view: RoundView

    async def close(self) -> None:
        """Cancel timers, then release the database and Redis connections."""

        await self.scheduler.shutdown()
        await self.database.close()
        await self.kv_async.aclose()
        self.logger.info(
            "Application services closed",
            extra={"event_type": "services_closed"},
        )


def build_services(
    cfg: Config,
    *,
    redis_client: Optional[aioredis.Redis] = None,
    scheduler: Optional[RoundScheduler] = None,
    clock: Callable[[], dt.datetime] = now_utc,
    configure_logging: bool = True,
) -> ApplicationServices:
    """Construct and wire the stores, ledger, scheduler and lifecycle engines.

    Nothing connects here; the database schema is created on first use and
    Redis connects lazily. Call
    :meth:`RecoveryService.run_startup_recovery` from inside the running loop
    to re-arm timers of rounds still open from a previous run.
    """

    if configure_logging:
        level = logging.getLevelName(cfg.LOG_LEVEL)
        setup_logging(level if isinstance(level, int) else logging.INFO, debug_mode=cfg.DEBUG)
    logger = enforce_context(logging.getLogger("betbot"))

    constants = cfg.constants
    history = constants.history
    redis_keys = constants.redis

    kv_async = redis_client or aioredis.Redis(**_build_redis_client_kwargs(cfg))
    logger.info(
        "Redis client initialized with lazy connection",
        extra={
            "event_type": "redis_client_created",
            "host": cfg.REDIS_HOST,
            "port": cfg.REDIS_PORT,
        },
    )

    database = Database(cfg.DATABASE_URL, echo=cfg.DATABASE_ECHO)
    round_store = SqlRoundStore(database, clock=clock)
    wager_store = SqlWagerStore(database, clock=clock)
    transaction_store = SqlTransactionStore(database)

    ledger = RedisLedger(
        kv_async,
        transactions=transaction_store,
        starting_balance=cfg.STARTING_BALANCE,
        key_prefix=redis_keys.get("balance_key_prefix", "betbot:balance:"),
        leaderboard_key=redis_keys.get("leaderboard_key", "betbot:leaderboard"),
        names_key=redis_keys.get("names_key", "betbot:names"),
    )

    scheduler = scheduler or AsyncioRoundScheduler(
        logger_=_make_service_logger(logger, "scheduler", "scheduler")
    )
    locks = RoundLockRegistry()
    engine_kwargs: Dict[str, Any] = {
        "rounds": round_store,
        "wagers": wager_store,
        "ledger": ledger,
        "scheduler": scheduler,
        "window_seconds": cfg.BETTING_WINDOW_SECONDS,
        "payout_multiplier": cfg.PAYOUT_MULTIPLIER,
        "default_list_limit": int(history.get("list_limit", 10)),
        "clock": clock,
        "locks": locks,
    }
    match_manager = MatchManager(
        logger_=_make_service_logger(logger, "matches", "match_lifecycle"),
        **engine_kwargs,
    )
    event_manager = EventManager(
        validator=EventSideValidator(constants.ui.get("event_sides", ("Yes", "No"))),
        logger_=_make_service_logger(logger, "events", "event_lifecycle"),
        **engine_kwargs,
    )

    recovery_service = RecoveryService(
        engines=(match_manager, event_manager),
        logger=_make_service_logger(logger, "recovery", "recovery"),
    )

    return ApplicationServices(
        logger=logger,
        config=cfg,
        kv_async=kv_async,
        database=database,
        round_store=round_store,
        wager_store=wager_store,
        transaction_store=transaction_store,
        ledger=ledger,
        scheduler=scheduler,
        match_manager=match_manager,
        event_manager=event_manager,
        recovery_service=recovery_service,
        view=RoundView(constants, timezone_name=cfg.TIMEZONE_NAME),
    )


__all__ = ["ApplicationServices", "build_services"]
