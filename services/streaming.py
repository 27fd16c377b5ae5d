"""Helpers for consuming long-lived HTTP response bodies."""

import asyncio
from collections.abc import AsyncIterator


async def until_cancelled(
    source: AsyncIterator[str],
    cancel: asyncio.Event | None,
) -> AsyncIterator[str]:
    """Relay items from ``source`` until it ends or ``cancel`` is set.

    A pending read is abandoned as soon as the flag is set, so callers
    can close the response immediately instead of waiting for the next
    line to arrive.
    """
    if cancel is None:
        async for item in source:
            yield item
        return

    if cancel.is_set():
        return

    cancel_wait = asyncio.ensure_future(cancel.wait())
    next_item: asyncio.Future | None = None
    try:
        while True:
            next_item = asyncio.ensure_future(anext(source))
            done, _ = await asyncio.wait(
                {next_item, cancel_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if next_item not in done:
                next_item.cancel()
                try:
                    await next_item
                except (asyncio.CancelledError, StopAsyncIteration):
                    pass
                return
            try:
                item = next_item.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        cancel_wait.cancel()
        if next_item is not None and not next_item.done():
            next_item.cancel()
