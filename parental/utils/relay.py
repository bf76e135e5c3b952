import asyncio
import logging
from typing import AsyncIterator

logger = logging.getLogger("parental.relay")

_DONE = object()


async def prefetch(fragments: AsyncIterator[str]) -> AsyncIterator[str]:
    """Start ``fragments`` in its own task and wait for the first item.

    Errors raised before the first fragment propagate from this call, while
    the HTTP status can still be chosen. The returned iterator replays the
    first fragment and drains the rest; closing it cancels the producer.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def pump():
        try:
            async for fragment in fragments:
                await queue.put(fragment)
        except Exception as exc:
            await queue.put(exc)
        else:
            await queue.put(_DONE)

    producer = asyncio.create_task(pump())
    first = await queue.get()
    if isinstance(first, Exception):
        raise first

    async def drain():
        item = first
        try:
            while item is not _DONE:
                if isinstance(item, Exception):
                    logger.error("Stream stopped after partial output: %s", item)
                    return
                yield item
                item = await queue.get()
        finally:
            producer.cancel()

    return drain()
