"""Entry point for the candlestick aggregation service.

Wires all components together, optionally embeds the FastAPI query API, and
pumps trades from the configured source into the sharded engine. When the
API is enabled (default), ingestion and API share a single asyncio event
loop via uvicorn's programmatic API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown: queued trades are processed
and every shard flushes before the database closes.

Component wiring order (in _build_components):
1. CandleDatabase + SqliteCandleStorage (durable store)
2. PipelineMonitor (signals and alerts)
3. ShardedEngine (decoder, shard workers, sink writers)
4. QueryService (read path)
5. RetentionJob (periodic purge)
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import uvicorn
from fastapi import FastAPI

from candles.config import AppSettings
from candles.logging import get_logger, setup_logging
from candles.monitoring import PipelineMonitor
from candles.pipeline.router import ShardedEngine
from candles.pipeline.source import pump, read_lines
from candles.query.service import QueryService
from candles.retention import RetentionJob
from candles.storage.database import CandleDatabase
from candles.storage.sqlite_store import SqliteCandleStorage


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all service components from settings.

    Note: Does NOT connect the database -- that happens in the lifespan
    (API mode) or run() (headless mode).
    """
    database = CandleDatabase(settings.storage.db_path)
    storage = SqliteCandleStorage(database)
    monitor = PipelineMonitor()
    engine = ShardedEngine(
        storage=storage,
        aggregation=settings.aggregation,
        shards=settings.shards,
        sink=settings.sink,
        monitor=monitor,
    )
    candle_retention_days = settings.retention.candle_retention_days
    retention_job = RetentionJob(
        storage=storage,
        trade_retention=settings.aggregation.retention,
        candle_retention=(
            None if candle_retention_days is None else timedelta(days=candle_retention_days)
        ),
        interval_seconds=settings.retention.purge_interval_seconds,
        horizon=engine.retention_horizon,
    )
    return {
        "database": database,
        "storage": storage,
        "monitor": monitor,
        "engine": engine,
        "query_service": QueryService(storage),
        "retention_job": retention_job,
    }


async def _start(components: dict[str, Any]) -> None:
    await components["database"].connect()
    await components["engine"].start()
    await components["retention_job"].start()


async def _shutdown(components: dict[str, Any]) -> None:
    await components["retention_job"].stop()
    await components["engine"].stop()
    await components["database"].close()


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """Register SIGINT/SIGTERM to request a graceful stop.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("candles.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def _ingest(settings: AppSettings, engine: ShardedEngine) -> None:
    await pump(engine, read_lines(settings.ingest.source_path))
    await engine.flush()


def _log_ingest_failure(task: asyncio.Task) -> None:  # type: ignore[type-arg]
    """Done-callback: report an ingestion task that died with an error."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        get_logger("candles.main").error("ingest_failed", error=str(error), exc_info=error)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run ingestion alongside the API.

    On startup: connects storage, starts shards and retention, and starts
    the ingestion pump as a background task.
    On shutdown: cancels the pump, drains shards, closes storage.
    """
    logger = get_logger("candles.main")
    settings = app.state.settings
    components = app.state.components

    await _start(components)
    ingest_task = asyncio.create_task(_ingest(settings, components["engine"]))
    ingest_task.add_done_callback(_log_ingest_failure)
    logger.info("lifespan_started", source=settings.ingest.source_path)

    try:
        yield
    finally:
        ingest_task.cancel()
        await asyncio.gather(ingest_task, return_exceptions=True)
        await _shutdown(components)
        logger.info("candle_service_stopped")


async def run() -> None:
    """Run the aggregation service.

    When the API is enabled (API_ENABLED=true, the default) the lifespan
    manages component startup/shutdown and uvicorn serves queries until it
    is signalled. Otherwise the source is consumed headless until it is
    exhausted or a stop signal arrives.
    """
    settings = AppSettings()

    setup_logging(settings.log_level)
    logger = get_logger("candles.main")

    components = _build_components(settings)

    if settings.api.enabled:
        from candles.api.app import create_api_app

        app = create_api_app(
            query_service=components["query_service"],
            monitor=components["monitor"],
            engine=components["engine"],
            lifespan=lifespan,
        )
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
            shards=settings.shards.count,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
        return

    stop_event = asyncio.Event()
    _setup_signal_handlers(stop_event)

    logger.info(
        "starting_headless",
        shards=settings.shards.count,
        intervals=[i.value for i in settings.aggregation.intervals],
        allowed_lateness_seconds=settings.aggregation.allowed_lateness_seconds,
        grace_window_seconds=settings.aggregation.grace_window_seconds,
    )

    await _start(components)
    ingest_task = asyncio.create_task(_ingest(settings, components["engine"]))
    ingest_task.add_done_callback(_log_ingest_failure)
    stop_task = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({ingest_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (ingest_task, stop_task):
            task.cancel()
        await asyncio.gather(ingest_task, stop_task, return_exceptions=True)
        await _shutdown(components)
        logger.info("candle_service_stopped", signals=components["monitor"].stats())


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
