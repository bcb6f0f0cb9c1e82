"""
DB Agent - QAN Interval Module

Interval iterators turn clock ticks into intervals. The slow log iterator
records the slow log file and its size at every tick, so consecutive
intervals cover contiguous byte ranges of the file; the Performance Schema
iterator only records the tick times.
"""

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..channels import Selector, drain

EMIT_TIMEOUT = 1.0


@dataclass
class Interval:
    number: int = 0
    filename: str = ""
    start_time: Optional[datetime] = None
    stop_time: Optional[datetime] = None
    start_offset: int = 0
    end_offset: int = 0

    def __str__(self) -> str:
        s = f"{self.number} {self.start_time} to {self.stop_time}"
        if self.filename:
            s += f" ({self.filename} {self.start_offset}-{self.end_offset})"
        return s


class IntervalIter:
    """Base iterator: waits for ticks and emits intervals on interval_chan"""

    def __init__(self, logger, tick_chan: asyncio.Queue):
        self.logger = logger
        self.tick_chan = tick_chan
        self.interval_chan: asyncio.Queue = asyncio.Queue(maxsize=1)
        self.interval_no = 0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        # Ticks that arrived while stopped are stale
        drain(self.tick_chan)
        self._reset()
        self._stop = asyncio.Event()
        self._task = asyncio.ensure_future(self.run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self._stop.set()
        await task

    def _reset(self) -> None:
        pass

    async def run(self) -> None:
        selector = Selector()
        selector.add("tick", self.tick_chan)
        selector.add("stop", self._stop)
        try:
            while True:
                self.logger.debug("run:wait")
                event, now = await selector.next()
                if event == "stop":
                    self.logger.debug("run:stop")
                    return
                self.logger.debug("run:tick")
                try:
                    await self.tick(now)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.error(f"QAN interval iterator tick failed: {e}")
        finally:
            selector.close()

    async def tick(self, now: datetime) -> None:
        raise NotImplementedError

    async def emit(self, interval: Interval) -> None:
        try:
            await asyncio.wait_for(self.interval_chan.put(interval), EMIT_TIMEOUT)
        except asyncio.TimeoutError:
            self.logger.warn(f"Lost interval: {interval}")


class FileIntervalIter(IntervalIter):
    """Slow log iterator

    The first tick only records the start; every later tick emits the
    interval since the previous tick. If the file changed (different inode),
    the interval starts at offset 0 of the new file.
    """

    def __init__(self, logger, filename_func: Callable[[], str], tick_chan: asyncio.Queue):
        """Initialize slow log interval iterator

        Args:
            logger: Logger instance
            filename_func: Returns the current slow log file (blocking, may query MySQL)
            tick_chan: Clock subscription
        """
        super().__init__(logger, tick_chan)
        self.filename_func = filename_func
        self._prev_file = None
        self._cur = Interval()

    def _reset(self) -> None:
        self._prev_file = None
        self._cur = Interval()

    async def tick(self, now: datetime) -> None:
        loop = asyncio.get_running_loop()
        try:
            filename = await loop.run_in_executor(None, self.filename_func)
            if not filename:
                raise OSError("slow_query_log_file is not set")
            st = os.stat(filename)
        except Exception as e:
            self.logger.warn(f"Cannot get slow log file: {e}")
            self._cur = Interval()
            return

        file_id = (st.st_dev, st.st_ino)
        file_changed = file_id != self._prev_file
        self._prev_file = file_id
        cur = self._cur

        if cur.start_time is None:
            self.logger.debug("run:first")
            cur.start_offset = st.st_size
            cur.start_time = now
            return

        self.interval_no += 1
        cur.number = self.interval_no
        cur.filename = filename
        if file_changed:
            self.logger.info("File changed")
            cur.start_offset = 0
        cur.end_offset = st.st_size
        cur.stop_time = now
        self._cur = Interval(start_time=now, start_offset=st.st_size)
        await self.emit(cur)


class PerfSchemaIntervalIter(IntervalIter):
    """Performance Schema iterator: one interval per tick, times only"""

    def __init__(self, logger, tick_chan: asyncio.Queue):
        super().__init__(logger, tick_chan)
        self._prev: Optional[datetime] = None

    def _reset(self) -> None:
        self._prev = None

    async def tick(self, now: datetime) -> None:
        self.interval_no += 1
        interval = Interval(number=self.interval_no, start_time=self._prev, stop_time=now)
        self._prev = now
        await self.emit(interval)
