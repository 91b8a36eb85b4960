"""FastAPI application factory for the read-only query API."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from candles.api import routes
from candles.monitoring import PipelineMonitor
from candles.query.service import QueryService


def create_api_app(
    query_service: QueryService,
    monitor: PipelineMonitor,
    engine: Any = None,
    lifespan: Any = None,
) -> FastAPI:
    """Create and configure the query API application.

    Args:
        query_service: Read path over storage.
        monitor: Pipeline signals (late trades, counters).
        engine: Optional ShardedEngine exposed through /api/stats.
        lifespan: Optional async context manager for startup/shutdown.
            Used by main.py to run ingestion on the same event loop.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(title="Trade Candles", lifespan=lifespan)

    app.state.query_service = query_service
    app.state.monitor = monitor
    app.state.engine = engine

    app.include_router(routes.router, prefix="/api")

    return app
