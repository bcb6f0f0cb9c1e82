"""
DB Agent - Log Relay Module

Reads the shared log channel and, for every entry at or above the log level,
appends it to the log file and forwards it to the API over the log link.
While the log link is down entries are kept in a two-tier buffer: the first
BUFFER_SIZE entries since the problem began, and a second buffer of the
newest entries that is reset, counting the loss, each time it fills.
"""

import asyncio
import sys
import time
from typing import List, Optional, TextIO

from ..channels import Selector, drain, offer
from ..logger import LogChannel
from ..proto import LOG_INFO, LOG_LEVEL_NAME, LOG_WARNING, LogEntry
from ..status import Status

BUFFER_SIZE = 10
SEND_TIMEOUT = 5
DRAIN_TIMEOUT = 2.0

STATUS_NAMES = ["log-relay", "log-file", "log-level", "log-chan", "log-buf1", "log-buf2", "log-api"]


class Relay:
    """Log relay

    All state is owned by the run() task; level and file changes arrive on
    single-slot queues so they are serialized with delivery.
    """

    def __init__(self, client, log_chan: LogChannel, log_file: str = "",
                 log_level: int = LOG_INFO, offline: bool = False):
        """Initialize log relay

        Args:
            client: WebsocketClient for the log link, or None
            log_chan: Shared log channel (must be bound)
            log_file: Path, STDOUT, STDERR or "" for none
            log_level: Highest level number that is relayed
            offline: Never forward to the API
        """
        self.client = client
        self.log_chan = log_chan
        self.log_file = log_file
        self.log_level = log_level
        self.offline = offline

        self.log_level_chan: asyncio.Queue = asyncio.Queue(maxsize=1)
        self.log_file_chan: asyncio.Queue = asyncio.Queue(maxsize=1)
        self.connected = False
        self.first_buf: List[LogEntry] = []
        self.second_buf: List[LogEntry] = []
        self.lost = 0
        self.api_err: Optional[BaseException] = None
        self.status = Status(STATUS_NAMES)

        self._file: Optional[TextIO] = None
        self._owns_file = False
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def run(self) -> None:
        self.status.update("log-relay", "Running")
        self.status.update("log-level", LOG_LEVEL_NAME.get(self.log_level, str(self.log_level)))
        self._set_log_file(self.log_file)

        selector = Selector()
        selector.add("entry", self.log_chan.queue)
        selector.add("level", self.log_level_chan)
        selector.add("file", self.log_file_chan)
        selector.add("stop", self._stop)
        if self.client is not None and not self.offline:
            selector.add("connected", self.client.connect_chan())
        self._go(self._connect())

        try:
            while True:
                self.status.update("log-relay", "Idle")
                event, value = await selector.next()
                if event == "entry":
                    await self._handle_entry(value)
                    self.status.update("log-chan", str(len(self.log_chan)))
                elif event == "connected":
                    self.connected = value
                    self._internal(f"connected: {str(value).lower()}")
                    if value:
                        self.status.update("log-api", "Connected")
                        if self.first_buf or self.second_buf:
                            await self.resend()
                    else:
                        self._go(self._connect())
                elif event == "file":
                    self._set_log_file(value)
                elif event == "level":
                    self._set_log_level(value)
                elif event == "stop":
                    await self._drain()
                    return
        finally:
            selector.close()
            for task in self._tasks:
                task.cancel()
            self._close_file()
            self.status.update("log-relay", "Stopped")

    async def stop(self) -> None:
        self._stop.set()

    def _go(self, coro) -> None:
        self._tasks = [t for t in self._tasks if not t.done()]
        self._tasks.append(asyncio.ensure_future(coro))

    async def _handle_entry(self, entry: LogEntry) -> None:
        if entry.level > self.log_level:
            return
        self._write_file(entry)
        if not self.offline and not entry.offline and self.client is not None:
            await self.send(entry, buffer_on_err=True)

    async def _drain(self) -> None:
        """Relay what is already queued, for at most DRAIN_TIMEOUT seconds"""
        deadline = time.monotonic() + DRAIN_TIMEOUT
        for entry in drain(self.log_chan.queue):
            if time.monotonic() >= deadline:
                break
            if entry.level > self.log_level:
                continue
            self._write_file(entry)
            if self.connected and not self.offline and not entry.offline:
                try:
                    await asyncio.wait_for(self.client.send(entry, SEND_TIMEOUT),
                                           max(deadline - time.monotonic(), 0.01))
                except Exception:
                    break

    def _internal(self, msg: str) -> None:
        entry = LogEntry(level=LOG_WARNING, service="log", msg=msg)
        if self.log_chan.queue is not None:
            offer(self.log_chan.queue, entry)

    async def _connect(self) -> None:
        if self.client is None or self.offline:
            self.status.update("log-api", "Disabled")
            return
        if self.api_err is not None:
            self.status.update("log-api", f"Connecting ({self.api_err})")
        else:
            self.status.update("log-api", "Connecting")
        await self.client.connect()
        self.api_err = None
        self._go(self._wait_err())

    async def _wait_err(self) -> None:
        # The log link is send-only; a failed send only shows up as a receive error.
        try:
            await self.client.recv()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.api_err = e
            await self.client.disconnect()

    def buffer(self, entry: LogEntry) -> None:
        if len(self.first_buf) < BUFFER_SIZE:
            self.first_buf.append(entry)
        elif len(self.second_buf) < BUFFER_SIZE:
            self.second_buf.append(entry)
        else:
            self.lost += len(self.second_buf)
            self.second_buf = [entry]
        self._update_buf_status()

    async def send(self, entry: LogEntry, buffer_on_err: bool) -> bool:
        if not self.connected:
            if buffer_on_err:
                self.buffer(entry)
            return False
        try:
            await self.client.send(entry, SEND_TIMEOUT)
            return True
        except asyncio.CancelledError:
            raise
        except Exception:
            if buffer_on_err:
                self.buffer(entry)
            return False

    async def resend(self) -> None:
        """Send the first buffer, the lost count, then the second buffer"""
        self.first_buf = [e for e in self.first_buf if not await self.send(e, False)]
        if self.lost > 0:
            lost_entry = LogEntry(level=LOG_WARNING, service="log",
                                  msg=f"Lost {self.lost} log entries")
            await self.send(lost_entry, False)
            self.lost = 0
        self.second_buf = [e for e in self.second_buf if not await self.send(e, False)]
        self._update_buf_status()

    def _update_buf_status(self) -> None:
        self.status.update("log-buf1", str(len(self.first_buf)))
        self.status.update("log-buf2", str(len(self.second_buf)))

    def _set_log_level(self, level: int) -> None:
        if level not in LOG_LEVEL_NAME:
            self._internal(f"Invalid log level: {level}")
            return
        self.log_level = level
        self.status.update("log-level", LOG_LEVEL_NAME[level])

    def _set_log_file(self, log_file: str) -> None:
        self.status.update("log-file", f"Setting to {log_file}")
        if not log_file:
            self._close_file()
            self.log_file = ""
            self.status.update("log-file", "Disabled")
            return
        if log_file == "STDOUT":
            f, owns = sys.stdout, False
        elif log_file == "STDERR":
            f, owns = sys.stderr, False
        else:
            try:
                f, owns = open(log_file, 'a', encoding='utf-8'), True
            except OSError as e:
                self._internal(str(e))
                return
        self._close_file()
        self._file, self._owns_file = f, owns
        self.log_file = log_file
        self.status.update("log-file", log_file)

    def _write_file(self, entry: LogEntry) -> None:
        if self._file is None:
            return
        ts = entry.ts.astimezone().strftime("%Y/%m/%d %H:%M:%S.%f")
        try:
            self._file.write(f"{ts} {entry.service}: {entry.level_name}: {entry.msg}\n")
            self._file.flush()
        except OSError as e:
            self._internal(f"Cannot write log file {self.log_file}: {e}")

    def _close_file(self) -> None:
        f, owns = self._file, self._owns_file
        self._file, self._owns_file = None, False
        if f is not None and owns:
            f.close()

    def get_status(self) -> dict:
        self.status.update("log-chan", str(len(self.log_chan)))
        return self.status.all()
