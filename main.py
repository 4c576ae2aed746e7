#!/usr/bin/env python3

import asyncio
import signal
import sys
from typing import Mapping

from dotenv import load_dotenv

from betapp.bootstrap import ApplicationServices, build_services
from betapp.config import Config


def _startup_log_extra(*, stage: str, additional: Mapping[str, object] | None = None) -> dict:
    """Return a structured ``extra`` payload for startup logs."""

    extra = {"category": "startup", "stage": stage, "event_type": f"startup_{stage}"}
    if additional:
        extra.update(dict(additional))
    return extra


async def _serve(services: ApplicationServices) -> None:
    logger = services.logger.getChild("main")
    await services.database.ensure_ready()
    stats = await services.recovery_service.run_startup_recovery()
    logger.info(
        "Betting engine ready",
        extra=_startup_log_extra(
            stage="ready",
            additional={
                "window_seconds": services.config.BETTING_WINDOW_SECONDS,
                "rounds_rearmed": stats["rounds_rearmed"],
                "rounds_closed": stats["rounds_closed"],
            },
        ),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down", extra=_startup_log_extra(stage="shutdown"))
        await services.close()


def main() -> None:
    load_dotenv()
    cfg: Config = Config()
    services = build_services(cfg)
    logger = services.logger.getChild(__name__)

    logger.info(
        "Starting betting engine",
        extra=_startup_log_extra(
            stage="validation",
            additional={
                "redis_host": cfg.REDIS_HOST,
                "database_url": cfg.DATABASE_URL.split("@")[-1],
            },
        ),
    )

    try:
        asyncio.run(_serve(services))
    except Exception:
        logger.exception("Betting engine stopped unexpectedly", extra=_startup_log_extra(stage="crash"))
        sys.exit(1)


if __name__ == "__main__":
    main()
