"""
DB Agent - Channels Module

Small helpers for message passing between asyncio tasks: non-blocking
offers to bounded queues and a Selector that waits on several sources at
once and hands back tagged events, one at a time, to a single event loop.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

Source = Union[asyncio.Queue, asyncio.Event, Callable[[], Awaitable[Any]]]


def offer(queue: asyncio.Queue, item: Any) -> bool:
    """Put item without blocking

    Returns:
        False if the queue is full and the item was dropped
    """
    try:
        queue.put_nowait(item)
        return True
    except asyncio.QueueFull:
        return False


def drain(queue: asyncio.Queue) -> list:
    """Remove and return everything currently in the queue"""
    items = []
    while True:
        try:
            items.append(queue.get_nowait())
        except asyncio.QueueEmpty:
            return items


class Selector:
    """Wait on many sources, return (name, value) for the first ready one

    Each source keeps one pending waiter between calls, so a value that
    arrives while the caller is busy is returned by the next call instead of
    being lost. When several sources are ready, they are returned in the
    order they were added.
    """

    def __init__(self):
        self._sources: Dict[str, Source] = {}
        self._waiters: Dict[str, asyncio.Task] = {}

    def add(self, name: str, source: Source) -> None:
        self.remove(name)
        self._sources[name] = source

    def remove(self, name: str) -> None:
        self._sources.pop(name, None)
        waiter = self._waiters.pop(name, None)
        if waiter is not None and not waiter.done():
            waiter.cancel()

    def _arm(self, name: str) -> asyncio.Task:
        waiter = self._waiters.get(name)
        if waiter is None:
            source = self._sources[name]
            if isinstance(source, asyncio.Queue):
                aw = source.get()
            elif isinstance(source, asyncio.Event):
                aw = source.wait()
            else:
                aw = source()
            waiter = asyncio.ensure_future(aw)
            self._waiters[name] = waiter
        return waiter

    async def next(self, timeout: Optional[float] = None) -> Tuple[Optional[str], Any]:
        """Return the next ready (name, value), or (None, None) on timeout"""
        waiters = {name: self._arm(name) for name in list(self._sources)}
        for name, waiter in waiters.items():
            if waiter.done():
                return name, self._take(name)
        await asyncio.wait(list(waiters.values()), timeout=timeout,
                           return_when=asyncio.FIRST_COMPLETED)
        for name, waiter in waiters.items():
            if waiter.done():
                return name, self._take(name)
        return None, None

    def _take(self, name: str) -> Any:
        # An asyncio.Event stays set; the caller decides whether to clear it.
        return self._waiters.pop(name).result()

    def close(self) -> None:
        for waiter in self._waiters.values():
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()
        self._sources.clear()
