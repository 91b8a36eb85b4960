"""Newline-delimited JSON trade source.

Stands in for the message transport: reads one raw trade record per line
from a file or stdin and feeds the engine. Blocking reads run in a worker
thread so the event loop (and the query API) stays responsive.
"""

import asyncio
import sys
from collections.abc import AsyncIterator
from typing import IO

from candles.logging import get_logger
from candles.pipeline.router import ShardedEngine

logger = get_logger(__name__)


async def read_lines(path: str) -> AsyncIterator[str]:
    """Yield non-empty lines from a file path, or stdin when path is "-"."""
    stream: IO[str] = sys.stdin if path == "-" else open(path, encoding="utf-8")
    try:
        while True:
            line = await asyncio.to_thread(stream.readline)
            if not line:
                break
            line = line.strip()
            if line:
                yield line
    finally:
        if stream is not sys.stdin:
            stream.close()


async def pump(engine: ShardedEngine, lines: AsyncIterator[str]) -> int:
    """Submit every line to the engine. Returns the number of lines read."""
    count = 0
    async for line in lines:
        await engine.submit(line)
        count += 1
        if count % 10_000 == 0:
            logger.info("ingest_progress", lines=count)
    logger.info("ingest_source_exhausted", lines=count)
    return count
