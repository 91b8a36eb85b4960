"""Tests for the API lifespan: startup, ingestion task and shutdown."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI

from candles.main import lifespan


def _app() -> FastAPI:
    app = FastAPI()
    app.state.settings = MagicMock()
    app.state.settings.ingest.source_path = "trades.jsonl"
    app.state.components = {
        "database": AsyncMock(),
        "engine": AsyncMock(),
        "retention_job": AsyncMock(),
    }
    return app


async def _wait_forever(*_: object) -> None:
    await asyncio.Event().wait()


class TestLifespan:
    @pytest.mark.asyncio()
    async def test_failed_ingest_still_shuts_down(self) -> None:
        app = _app()
        components = app.state.components
        ingest = AsyncMock(side_effect=FileNotFoundError("trades.jsonl"))
        logger = MagicMock()

        with (
            patch("candles.main._ingest", ingest),
            patch("candles.main.get_logger", return_value=logger),
        ):
            async with lifespan(app):
                for _ in range(3):
                    await asyncio.sleep(0)
                ingest.assert_awaited_once()

        components["engine"].stop.assert_awaited_once()
        components["retention_job"].stop.assert_awaited_once()
        components["database"].close.assert_awaited_once()
        events = [c.args[0] for c in logger.error.call_args_list]
        assert events == ["ingest_failed"]

    @pytest.mark.asyncio()
    async def test_running_ingest_cancelled_on_shutdown(self) -> None:
        app = _app()
        components = app.state.components
        logger = MagicMock()

        with (
            patch("candles.main._ingest", _wait_forever),
            patch("candles.main.get_logger", return_value=logger),
        ):
            async with lifespan(app):
                await asyncio.sleep(0)

        components["database"].connect.assert_awaited_once()
        components["engine"].start.assert_awaited_once()
        components["engine"].stop.assert_awaited_once()
        components["database"].close.assert_awaited_once()
        logger.error.assert_not_called()

    @pytest.mark.asyncio()
    async def test_shutdown_runs_when_serving_fails(self) -> None:
        app = _app()
        components = app.state.components

        with patch("candles.main._ingest", _wait_forever):
            with pytest.raises(RuntimeError):
                async with lifespan(app):
                    raise RuntimeError("server crashed")

        components["engine"].stop.assert_awaited_once()
        components["database"].close.assert_awaited_once()
