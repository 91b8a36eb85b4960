"""Tests for the read-only HTTP API, served in-process through httpx."""

from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from candles.aggregation.accumulator import OHLCAccumulator
from candles.aggregation.buckets import resolve_bucket_key
from candles.api.app import create_api_app
from candles.models import IntervalType, LateReason, LateTrade, Trade
from candles.monitoring import PipelineMonitor
from candles.query.service import QueryService
from candles.storage.memory import InMemoryCandleStorage

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _trade(trade_id: str, minutes: float, amount: str = "100") -> Trade:
    return Trade(
        id=trade_id,
        account_id="acc",
        amount=Decimal(amount),
        trx_amount=Decimal("1"),
        event_time=T0 + timedelta(minutes=minutes),
    )


@pytest_asyncio.fixture()
async def client(
    storage: InMemoryCandleStorage, monitor: PipelineMonitor
) -> AsyncIterator[httpx.AsyncClient]:
    for i, minutes in enumerate((5, 35, 65)):
        trade = _trade(str(i), minutes, str(100 + i))
        await storage.upsert_trade(trade)
        key = resolve_bucket_key("acc", trade.event_time, IntervalType.M30)
        await storage.upsert_candle(OHLCAccumulator.start(key, trade).snapshot())

    app = create_api_app(query_service=QueryService(storage), monitor=monitor)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


class TestCandlesEndpoint:
    @pytest.mark.asyncio()
    async def test_default_interval_and_range(self, client: httpx.AsyncClient) -> None:
        response = await client.get(
            "/api/candles/acc",
            params={"start": "2024-01-01T00:30:00Z", "end": "2024-01-01T01:30:00Z"},
        )

        assert response.status_code == 200
        body = response.json()
        assert [c["interval_start"] for c in body] == [
            "2024-01-01T00:30:00+00:00",
            "2024-01-01T01:00:00+00:00",
        ]
        assert body[0]["open"] == "101"

    @pytest.mark.asyncio()
    async def test_other_interval_is_empty(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/candles/acc", params={"interval": "1d"})
        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio()
    async def test_unknown_interval_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/candles/acc", params={"interval": "5m"})
        assert response.status_code == 422

    @pytest.mark.asyncio()
    async def test_bad_timestamp_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/candles/acc", params={"start": "soon"})
        assert response.status_code == 400


class TestTradesEndpoint:
    @pytest.mark.asyncio()
    async def test_trades_in_range(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/trades/acc", params={"end": "2024-01-01T00:35:00Z"})

        assert response.status_code == 200
        assert [t["id"] for t in response.json()] == ["0"]


class TestSignalsEndpoints:
    @pytest.mark.asyncio()
    async def test_late_trades_newest_first(
        self, client: httpx.AsyncClient, monitor: PipelineMonitor
    ) -> None:
        for i in range(3):
            monitor.late_dropped(
                LateTrade(
                    trade=_trade(f"late-{i}", 1),
                    interval_types=(IntervalType.M30,),
                    watermark=T0 + timedelta(hours=3),
                    reason=LateReason.GRACE_EXPIRED,
                )
            )

        response = await client.get("/api/late-trades", params={"limit": 2})

        body = response.json()
        assert [t["id"] for t in body] == ["late-2", "late-1"]
        assert body[0]["reason"] == "grace_expired"
        assert body[0]["intervals"] == ["30m"]

    @pytest.mark.asyncio()
    async def test_stats_without_engine(
        self, client: httpx.AsyncClient, monitor: PipelineMonitor
    ) -> None:
        monitor.alert("storage_retry_exhausted", target="candle")

        response = await client.get("/api/stats")

        assert response.json() == {"signals": {"alert.storage_retry_exhausted": 1}}
