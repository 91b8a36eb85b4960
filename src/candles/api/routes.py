"""JSON API endpoints for candlesticks, raw trades and pipeline stats."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from candles.exceptions import MalformedTradeError
from candles.ingest.decoder import parse_timestamp
from candles.models import IntervalType
from candles.query.service import QueryService, candle_to_dict, trade_to_dict

router = APIRouter()


def _parse_bound(value: str | None, name: str) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_timestamp(value, name)
    except MalformedTradeError:
        raise HTTPException(status_code=400, detail=f"invalid {name}: {value}") from None


def _query_service(request: Request) -> QueryService:
    return request.app.state.query_service


@router.get("/candles/{account_id}")
async def get_candles(
    request: Request,
    account_id: str,
    interval: IntervalType = Query(IntervalType.M30),
    start: str | None = None,
    end: str | None = None,
) -> JSONResponse:
    """Candles for one account and interval, oldest first. Range is [start, end)."""
    candles = await _query_service(request).get_candles(
        account_id,
        interval,
        _parse_bound(start, "start"),
        _parse_bound(end, "end"),
    )
    return JSONResponse(content=[candle_to_dict(c) for c in candles])


@router.get("/trades/{account_id}")
async def get_trades(
    request: Request,
    account_id: str,
    start: str | None = None,
    end: str | None = None,
) -> JSONResponse:
    """Raw trades for one account, oldest first. Range is [start, end)."""
    trades = await _query_service(request).get_trades(
        account_id,
        _parse_bound(start, "start"),
        _parse_bound(end, "end"),
    )
    return JSONResponse(content=[trade_to_dict(t) for t in trades])


@router.get("/late-trades")
async def get_late_trades(request: Request, limit: int = 100) -> JSONResponse:
    """Most recent trades excluded from aggregates, newest first."""
    monitor = request.app.state.monitor
    recent = list(monitor.recent_late)[-limit:][::-1] if limit > 0 else []
    return JSONResponse(
        content=[
            {
                **trade_to_dict(late.trade),
                "intervals": [i.value for i in late.interval_types],
                "watermark": None if late.watermark is None else late.watermark.isoformat(),
                "reason": late.reason.value,
            }
            for late in recent
        ]
    )


@router.get("/stats")
async def get_stats(request: Request) -> JSONResponse:
    """Engine, shard and signal counters."""
    engine = request.app.state.engine
    if engine is None:
        return JSONResponse(content={"signals": request.app.state.monitor.stats()})
    return JSONResponse(content=engine.stats())
