"""Count- and time-triggered batching of an async event stream."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator
from contextlib import suppress
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")


@dataclass(slots=True)
class _Failed:
    error: BaseException


_END = object()


async def batch_events(
    stream: AsyncIterable[T],
    max_count: int,
    max_interval: float,
) -> AsyncIterator[list[T]]:
    """Group *stream* into lists of at most *max_count* items.

    A batch is emitted once it holds *max_count* items or *max_interval*
    seconds after its first item arrived, whichever comes first. The timer
    only runs while a batch is pending, so an idle stream emits nothing.
    When *stream* ends the pending partial batch is emitted; when it fails
    the error is raised and the pending batch is discarded.

    The upstream is read by a separate task through a queue bounded to
    *max_count*, so a slow consumer slows the upstream down.
    """
    if max_count < 1:
        msg = f"max_count must be >= 1, got {max_count}"
        raise ValueError(msg)
    if max_interval <= 0:
        msg = f"max_interval must be > 0, got {max_interval}"
        raise ValueError(msg)

    queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max_count)

    async def _pump() -> None:
        try:
            async for item in stream:
                await queue.put(item)
        except Exception as exc:
            await queue.put(_Failed(exc))
        else:
            await queue.put(_END)

    loop = asyncio.get_running_loop()
    reader = asyncio.create_task(_pump())
    pending: list[T] = []
    deadline = 0.0
    try:
        while True:
            if pending:
                remaining = deadline - loop.time()
                try:
                    if remaining <= 0:
                        raise TimeoutError
                    item = await asyncio.wait_for(queue.get(), timeout=remaining)
                except TimeoutError:
                    batch, pending = pending, []
                    yield batch
                    continue
            else:
                item = await queue.get()

            if item is _END:
                if pending:
                    yield pending
                return
            if isinstance(item, _Failed):
                raise item.error

            pending.append(item)  # type: ignore[arg-type]
            if len(pending) == 1:
                deadline = loop.time() + max_interval
            if len(pending) >= max_count:
                batch, pending = pending, []
                yield batch
    finally:
        reader.cancel()
        with suppress(asyncio.CancelledError):
            await reader
        # Release the upstream (e.g. an open HTTP subscription) right away.
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()
