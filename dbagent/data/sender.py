"""
DB Agent - Data Sender Module

Ships spooled reports to the API on every tick of its own ticker: oldest
entry first, each POSTed as-is. An entry is removed only after a 2xx
response. The first failure ends the pass so entries keep their order, and
the next pass waits out the backoff.
"""

import asyncio
import socket
import time
import urllib.error
from datetime import timedelta
from typing import Callable, Optional

from ..api_client import is_timeout
from ..backoff import Backoff
from ..channels import Selector
from ..proto import utcnow
from ..status import Status
from .serializer import is_gzip
from .stats import SenderStats, SentInfo, format_sent_report

MAX_WARN_ERR = 3
STATS_WINDOW = timedelta(days=1)


class Sender:
    def __init__(self, logger, api, spool, tick_chan: asyncio.Queue,
                 backoff: Optional[Backoff] = None,
                 now_func: Callable[[], float] = time.monotonic):
        """Initialize sender

        Args:
            logger: Logger instance
            api: APIClient, or anything with post_data(body, content_encoding)
            spool: Spooler to ship from
            tick_chan: Queue ticked by the clock every send interval
            backoff: Backoff applied after a failed pass
            now_func: Monotonic clock
        """
        self.logger = logger
        self.api = api
        self.spool = spool
        self.tick_chan = tick_chan
        self.backoff = backoff or Backoff()
        self.now_func = now_func
        self.stats = SenderStats(STATS_WINDOW)
        self.last: Optional[SentInfo] = None
        self.status = Status(["data-sender", "data-sender-last", "data-sender-1d"])

        self._retry_at = 0.0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._stop = asyncio.Event()
        self._task = asyncio.ensure_future(self.run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self._stop.set()
        await task

    async def run(self) -> None:
        selector = Selector()
        selector.add("tick", self.tick_chan)
        selector.add("stop", self._stop)
        self.logger.info("Start")
        try:
            while True:
                self.status.update("data-sender", "Idle")
                event, _ = await selector.next()
                if event == "stop":
                    self.logger.info("Stop")
                    self.status.update("data-sender", "Stopped")
                    return
                if self.now_func() < self._retry_at:
                    self.logger.debug("Backing off, skipping send")
                    continue
                try:
                    await self.send()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.error(f"Send failed: {e}")
                    self._failed()
        finally:
            selector.close()

    def _failed(self) -> None:
        wait = self.backoff.wait()
        self._retry_at = self.now_func() + wait
        if wait:
            self.logger.info(f"Waiting {wait:.0f}s before next send")

    async def send(self) -> SentInfo:
        """Ship every entry, oldest first, stopping at the first failure"""
        loop = asyncio.get_running_loop()
        info = SentInfo()
        n4xx = n5xx = 0
        failed = False
        started = time.monotonic()
        self.status.update("data-sender", "Sending")

        for name in self.spool.files():
            try:
                raw = await loop.run_in_executor(None, self.spool.read, name)
            except OSError as e:
                self.logger.error(f"Cannot read {name}: {e}")
                info.bad_files += 1
                continue

            encoding = "gzip" if is_gzip(raw) else None
            try:
                code, _ = await loop.run_in_executor(None, self.api.post_data, raw, encoding)
            except (urllib.error.URLError, socket.timeout, OSError) as e:
                if is_timeout(e):
                    info.timeouts += 1
                else:
                    info.errs += 1
                self.logger.warn(f"Cannot send {name}: {e}")
                failed = True
                break

            if 200 <= code < 300:
                try:
                    await loop.run_in_executor(None, self.spool.remove, name)
                except OSError as e:
                    self.logger.error(f"Sent but cannot remove {name}: {e}")
                info.files += 1
                info.bytes += len(raw)
                self.logger.debug(f"Sent and removed {name}")
                continue

            info.api_errs += 1
            if 400 <= code < 500:
                if n4xx < MAX_WARN_ERR:
                    self.logger.warn(f"Sending {name}: API returned HTTP status {code}")
                n4xx += 1
            else:
                if n5xx < MAX_WARN_ERR:
                    self.logger.warn(f"Sending {name}: API returned HTTP status {code}")
                n5xx += 1
            failed = True
            break

        if n4xx > MAX_WARN_ERR:
            self.logger.warn(f"{n4xx - MAX_WARN_ERR} more 4xx errors")
        if n5xx > MAX_WARN_ERR:
            self.logger.warn(f"{n5xx - MAX_WARN_ERR} more 5xx errors")

        info.seconds = time.monotonic() - started
        info.at = utcnow()
        self.last = info
        self.stats.add(info)
        if failed:
            self._failed()
        elif info.files:
            self.backoff.success()

        last = SenderStats(STATS_WINDOW, now=info.at - timedelta(seconds=info.seconds))
        last.add(info)
        self.status.update("data-sender-last", format_sent_report(last.report()))
        self.status.update("data-sender-1d", format_sent_report(self.stats.report()))
        self.logger.debug(f"Done sending: {info.files} files")
        return info

    def get_status(self) -> dict:
        return self.status.all()
