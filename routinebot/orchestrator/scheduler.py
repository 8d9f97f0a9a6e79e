"""Continuous scheduler and single-cycle entry-point for Routinebot.

Component wiring
----------------
:func:`build_orchestrator` assembles every runtime component once per
process and tears them down in reverse order on exit:

1. Ensures the history database directory exists and opens it via
   :func:`~routinebot.history.database.open_db`.
2. Opens a :class:`~routinebot.service.http_client.ServiceHttpClient`
   shared by the catalog and the generation client.
3. Loads the :class:`~routinebot.priorities.store.PriorityStore` from the
   working directory and builds the
   :class:`~routinebot.priorities.selector.Selector`.
4. Builds the :class:`~routinebot.pipeline.pipeline.GenerationPipeline`
   (generation client + directive executor).

:func:`run_continuous` then drives
:meth:`~routinebot.orchestrator.cycle.CycleOrchestrator.run_forever` with
SIGTERM/SIGINT wired to
:meth:`~routinebot.orchestrator.cycle.CycleOrchestrator.request_stop`, and
writes a heartbeat file plus the lifetime stats file after every cycle.

Typical usage::

    import asyncio
    from routinebot.core.settings import Settings
    from routinebot.orchestrator.scheduler import run_continuous

    asyncio.run(run_continuous(Settings()))
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AsyncExitStack

import httpx

from routinebot.core.settings import Settings
from routinebot.history.database import open_db
from routinebot.history.repository import ExecutionHistoryRepository
from routinebot.orchestrator.cycle import CycleOrchestrator, CycleReport
from routinebot.orchestrator.metrics import STATS_PATH, LifetimeStats, write_stats_file
from routinebot.pipeline.executor import DirectiveExecutor
from routinebot.pipeline.pipeline import GenerationPipeline
from routinebot.priorities.selector import Selector
from routinebot.priorities.store import PriorityStore
from routinebot.service.catalog import HttpRoutineCatalog
from routinebot.service.generation import GenerationClient
from routinebot.service.http_client import ServiceHttpClient

__all__ = [
    "HEARTBEAT_PATH",
    "build_orchestrator",
    "run_continuous",
    "run_once",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Health-check heartbeat
# ---------------------------------------------------------------------------

#: Path to the heartbeat file written after each cycle.  Override via the
#: ``ROUTINEBOT_HEARTBEAT_PATH`` environment variable if ``/tmp`` is not
#: writable.
HEARTBEAT_PATH: str = os.environ.get("ROUTINEBOT_HEARTBEAT_PATH", "/tmp/routinebot_heartbeat")

_STOP_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGTERM, signal.SIGINT)


def _write_heartbeat(path: str = HEARTBEAT_PATH) -> None:
    """Write the current epoch timestamp to the heartbeat file.

    Errors are logged at WARNING level and never propagated.
    """
    try:
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(str(time.time()))
    except OSError:
        logger.warning("Failed to write heartbeat file '%s'.", path, exc_info=True)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@contextlib.asynccontextmanager
async def build_orchestrator(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    on_cycle: Callable[[CycleReport], None] | None = None,
) -> AsyncIterator[CycleOrchestrator]:
    """Yield a fully wired :class:`CycleOrchestrator`; release resources on exit.

    Args:
        settings: Application settings.
        transport: Optional httpx transport for the service client (tests).
        on_cycle: Forwarded to the orchestrator.
    """
    work_directory = settings.work_directory_resolved
    if not work_directory.is_dir():
        work_directory.mkdir(parents=True, exist_ok=True)
        logger.info("Created working directory %s.", work_directory)

    db_path = settings.history_database_path_resolved
    db_path.parent.mkdir(parents=True, exist_ok=True)

    async with AsyncExitStack() as stack:
        conn = await open_db(db_path)
        stack.push_async_callback(conn.close)
        history = ExecutionHistoryRepository(conn)

        client = await stack.enter_async_context(
            ServiceHttpClient(
                settings.api_base_url,
                token=settings.api_token,
                timeout=settings.request_timeout,
                transport=transport,
            )
        )
        if not settings.api_configured:
            logger.info("API_TOKEN is not set; requests are sent unauthenticated.")

        catalog = HttpRoutineCatalog(client, timeout=settings.request_timeout)
        generator = GenerationClient(
            client, settings.llm_endpoint, timeout=settings.generation_timeout
        )
        executor = DirectiveExecutor(
            work_directory,
            command_timeout=settings.command_timeout,
            dry_run=settings.dry_run,
        )
        pipeline = GenerationPipeline(
            generator,
            executor,
            work_directory,
            retry_policy=settings.retry_policy(),
        )

        store = PriorityStore.load(settings.priorities_path)
        stack.callback(store.flush)
        selector = Selector(store)

        logger.info(
            "Routinebot wired: api=%s work_directory=%s history=%s dry_run=%s",
            settings.api_base_url,
            work_directory,
            db_path,
            settings.dry_run,
        )
        yield CycleOrchestrator(
            catalog,
            pipeline,
            store,
            selector,
            history,
            settings,
            on_cycle=on_cycle,
        )


# ---------------------------------------------------------------------------
# Public entry-points
# ---------------------------------------------------------------------------


async def run_once(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CycleReport:
    """Execute a single cycle and return its report.

    Args:
        settings: Application settings.  Loaded from environment if ``None``.
        transport: Optional httpx transport for the service client (tests).
    """
    if settings is None:
        settings = Settings()
    async with build_orchestrator(settings, transport=transport) as orchestrator:
        return await orchestrator.run_cycle()


async def run_continuous(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    heartbeat_path: str = HEARTBEAT_PATH,
    stats_path: str = STATS_PATH,
) -> LifetimeStats:
    """Run cycles until SIGTERM/SIGINT, then return the lifetime stats.

    The first signal asks the orchestrator to stop: the current cycle is cut
    short at its next suspension point and in-flight dispatches get
    ``shutdown_grace_period`` seconds to unwind.  Signal handlers are removed
    in a ``finally`` block so they do not leak into a later ``asyncio.run``.

    Args:
        settings: Application settings.  Loaded from environment if ``None``.
        transport: Optional httpx transport for the service client (tests).
        heartbeat_path: Heartbeat file rewritten after every cycle.
        stats_path: Lifetime stats file rewritten after every cycle.

    Raises:
        asyncio.CancelledError: If the calling task is cancelled.
    """
    if settings is None:
        settings = Settings()

    stats = LifetimeStats()

    def _after_cycle(report: CycleReport) -> None:
        stats.update(report)
        _write_heartbeat(heartbeat_path)
        write_stats_file(stats, stats_path)
        logger.debug("%s", stats.format_summary())

    loop = asyncio.get_running_loop()
    registered: list[signal.Signals] = []

    async with build_orchestrator(
        settings, transport=transport, on_cycle=_after_cycle
    ) as orchestrator:

        def _request_graceful_shutdown(signame: str) -> None:
            logger.info("Received %s; graceful shutdown requested.", signame)
            orchestrator.request_stop()

        for sig in _STOP_SIGNALS:
            try:
                loop.add_signal_handler(sig, _request_graceful_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unsupported for %s on this platform.", sig.name)
            else:
                registered.append(sig)

        try:
            await orchestrator.run_forever()
        finally:
            for sig in registered:
                with contextlib.suppress(Exception):
                    loop.remove_signal_handler(sig)

    logger.info("%s", stats.format_summary())
    return stats
