"""
Council Portal — Election status sweeper.

Background process that:
1. Connects to the document store
2. Periodically persists the derived status of every election
   (upcoming -> active -> completed)
3. Reports elections about to start or end

Reads never depend on this sweep; it only keeps stored statuses fresh for
listing queries and reporting.

This is the entrypoint for the sweeper container.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import timedelta

import structlog

from council_portal.clock import Clock, SystemClock
from council_portal.config import settings
from council_portal.governance.elections import ElectionService
from council_portal.store.base import DocumentStore

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure structured logging."""
    logging.basicConfig(level=settings.log_level.upper(), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_election_service(store: DocumentStore, clock: Clock | None = None) -> ElectionService:
    return ElectionService(
        store,
        clock or SystemClock(),
        commit_retries=settings.commit_attempts,
        min_duration=timedelta(minutes=settings.election_min_duration_minutes),
        upcoming_window=timedelta(hours=settings.upcoming_window_hours),
        ending_soon_window=timedelta(hours=settings.ending_soon_window_hours),
    )


def sweep_once(elections: ElectionService, log=None) -> dict[str, int]:
    """
    Run one sweep.

    Returns:
        Counts of elections moved to each status, plus the number starting
        and ending soon.
    """
    log = log or structlog.get_logger()

    refreshed = elections.refresh_statuses()
    if not refreshed.ok:
        log.error("council_portal.sweeper.refresh_failed", code=refreshed.error.code)
        return {}

    summary = dict(refreshed.value)
    if summary:
        log.info("council_portal.sweeper.statuses_advanced", **summary)

    starting = elections.elections_starting_soon()
    if starting.ok:
        summary["starting_soon"] = len(starting.value)
        for election in starting.value:
            log.info(
                "council_portal.sweeper.starting_soon",
                election_id=str(election.id)[:8],
                title=election.title,
                start_date=election.start_date.isoformat(),
            )

    ending = elections.elections_ending_soon()
    if ending.ok:
        summary["ending_soon"] = len(ending.value)
        for election in ending.value:
            log.info(
                "council_portal.sweeper.ending_soon",
                election_id=str(election.id)[:8],
                title=election.title,
                end_date=election.end_date.isoformat(),
            )

    return summary


async def main() -> None:
    """Main sweeper loop."""
    configure_logging()
    log = structlog.get_logger()

    log.info(
        "council_portal.sweeper.starting",
        interval_seconds=settings.election_sweep_interval_seconds,
    )

    from council_portal.store.sql import SqlDocumentStore

    store = SqlDocumentStore(settings.database_url_sync, pool_pre_ping=True)
    store.initialize()
    elections = build_election_service(store)
    log.info("council_portal.sweeper.store_ready")

    try:
        while True:
            summary = sweep_once(elections, log)
            log.debug("council_portal.sweeper.heartbeat", **summary)
            await asyncio.sleep(settings.election_sweep_interval_seconds)

    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("council_portal.sweeper.shutdown")
    except Exception as e:
        log.exception("council_portal.sweeper.fatal_error", error=str(e))
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    asyncio.run(main())
