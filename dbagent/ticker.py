"""
DB Agent - Ticker Module

Wall-clock aligned tickers. A ticker for interval i ticks at every epoch
second t with t mod i == 0, so every component (and every agent) collecting
at the same interval shares the same boundaries.
"""

import asyncio
import math
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from .channels import offer


def began(interval: float, now: float) -> datetime:
    """Start of the aligned period that contains now"""
    start = math.floor(now / interval) * interval
    return datetime.fromtimestamp(start, tz=timezone.utc)


def next_tick(interval: float, now: float) -> float:
    """Epoch seconds of the first aligned tick strictly after now"""
    return (math.floor(now / interval) + 1) * interval


class EvenTicker:
    """Aligned ticker with non-blocking fan-out

    A subscriber whose queue is full misses the tick; ticks are never queued
    on its behalf.
    """

    def __init__(self, interval: float,
                 now_func: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if interval <= 0:
            raise ValueError(f"Invalid ticker interval: {interval}")
        self.interval = interval
        self.now_func = now_func
        self.sleep = sleep
        self._subscribers: List[asyncio.Queue] = []
        self._task: Optional[asyncio.Task] = None

    def add(self, chan: asyncio.Queue) -> None:
        if not any(c is chan for c in self._subscribers):
            self._subscribers.append(chan)

    def remove(self, chan: asyncio.Queue) -> None:
        self._subscribers = [c for c in self._subscribers if c is not chan]

    @property
    def subscribers(self) -> int:
        return len(self._subscribers)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.ensure_future(self.run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def eta(self) -> float:
        now = self.now_func()
        return next_tick(self.interval, now) - now

    async def run(self) -> None:
        target = next_tick(self.interval, self.now_func())
        while True:
            now = self.now_func()
            if now < target:
                await self.sleep(target - now)
                continue
            self.tick(datetime.fromtimestamp(target, tz=timezone.utc))
            # Re-align to the wall clock; a late wake-up skips missed periods.
            target = max(target + self.interval, next_tick(self.interval, now))

    def tick(self, ts: datetime) -> None:
        for chan in list(self._subscribers):
            offer(chan, ts)


class Clock:
    """One shared EvenTicker per distinct interval"""

    def __init__(self, now_func: Callable[[], float] = time.time,
                 ticker_factory: Optional[Callable[[float], EvenTicker]] = None):
        self.now_func = now_func
        self.ticker_factory = ticker_factory or (lambda i: EvenTicker(i, now_func))
        self._tickers: Dict[float, EvenTicker] = {}
        self._watchers: Dict[int, EvenTicker] = {}

    def add(self, chan: asyncio.Queue, interval: float) -> None:
        """Subscribe chan to ticks every interval seconds"""
        self.remove(chan)
        ticker = self._tickers.get(interval)
        if ticker is None:
            ticker = self.ticker_factory(interval)
            self._tickers[interval] = ticker
            ticker.start()
        ticker.add(chan)
        self._watchers[id(chan)] = ticker

    def remove(self, chan: asyncio.Queue) -> None:
        ticker = self._watchers.pop(id(chan), None)
        if ticker is None:
            return
        ticker.remove(chan)
        if ticker.subscribers == 0:
            self._tickers.pop(ticker.interval, None)
            asyncio.ensure_future(ticker.stop())

    def eta(self, chan: asyncio.Queue) -> float:
        """Seconds until chan's next tick, 0 if it is not subscribed"""
        ticker = self._watchers.get(id(chan))
        if ticker is None:
            return 0.0
        return ticker.eta()

    def intervals(self) -> List[float]:
        return sorted(self._tickers)

    async def stop(self) -> None:
        tickers = list(self._tickers.values())
        self._tickers.clear()
        self._watchers.clear()
        for ticker in tickers:
            await ticker.stop()
