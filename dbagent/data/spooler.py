"""
DB Agent - Data Spooler Module

Durable FIFO of serialized reports in one directory. Producers call write(),
which never blocks; a writer task stores each entry in a file named by a
zero-padded, strictly increasing nanosecond timestamp. Entries are written
under trash/ first and renamed in, so the spool directory only ever holds
complete entries.
"""

import asyncio
import errno
import os
import tempfile
import time
from typing import Any, Callable, Iterator, Optional

from ..channels import Selector, drain
from ..errors import SpoolFullError
from ..proto import format_ts, utcnow
from ..status import Status
from .serializer import JsonSerializer

WRITE_BUFFER = 100
KEY_WIDTH = 20
STOP_DRAIN_TIMEOUT = 2.0

# Errors that mean the spool directory itself is unusable
FATAL_ERRNOS = frozenset([errno.EACCES, errno.EPERM, errno.EROFS])


class Spooler:
    def __init__(self, logger, data_dir: str, trash_dir: str, hostname: str,
                 now_ns: Callable[[], int] = time.time_ns):
        """Initialize spooler

        Args:
            logger: Logger instance
            data_dir: Spool directory, owned exclusively by this spooler
            trash_dir: Directory for temporary files, same filesystem as data_dir
            hostname: Hostname recorded in every envelope
            now_ns: Clock for entry keys
        """
        self.logger = logger
        self.data_dir = data_dir
        self.trash_dir = trash_dir
        self.hostname = hostname
        self.now_ns = now_ns
        self.sz: Optional[JsonSerializer] = None
        self.status = Status(["data-spooler", "data-spooler-count"])

        self._data_chan: Optional[asyncio.Queue] = None
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._last_key = 0

    async def start(self, sz: JsonSerializer) -> None:
        os.makedirs(self.data_dir, exist_ok=True)
        os.makedirs(self.trash_dir, exist_ok=True)
        self.sz = sz
        self._data_chan = asyncio.Queue(maxsize=WRITE_BUFFER)
        self._stop = asyncio.Event()
        self._task = asyncio.ensure_future(self.run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        # Writes during stop raise SpoolFullError
        self._data_chan = None
        self._stop.set()
        try:
            await asyncio.wait_for(task, STOP_DRAIN_TIMEOUT + 1)
        except asyncio.TimeoutError:
            self.logger.warn("Timeout stopping spooler")

    def write(self, service: str, data: Any) -> str:
        """Queue one report for spooling without blocking

        Returns:
            The entry key

        Raises:
            SpoolFullError: If the write buffer is full; the report is dropped
        """
        if self._data_chan is None or self.sz is None:
            self.logger.warn(f"Spooler is not running, dropping {service} data")
            raise SpoolFullError()
        envelope = {
            'service': service,
            'hostname': self.hostname,
            'created': format_ts(utcnow()),
            'data': data,
        }
        raw = self.sz.to_bytes(envelope)
        key = self._next_key()
        try:
            self._data_chan.put_nowait((key, raw))
        except asyncio.QueueFull:
            self.logger.warn("Spool write buffer is full")
            raise SpoolFullError()
        return key

    def _next_key(self) -> str:
        key = max(self.now_ns(), self._last_key + 1)
        self._last_key = key
        return str(key).zfill(KEY_WIDTH)

    def files(self) -> Iterator[str]:
        """Entry names, oldest first"""
        try:
            names = os.listdir(self.data_dir)
        except FileNotFoundError:
            return iter(())
        return iter(sorted(n for n in names if n.isdigit()))

    def read(self, name: str) -> bytes:
        with open(os.path.join(self.data_dir, name), 'rb') as f:
            return f.read()

    def remove(self, name: str) -> None:
        os.remove(os.path.join(self.data_dir, name))

    def count(self) -> int:
        return sum(1 for _ in self.files())

    async def run(self) -> None:
        data_chan = self._data_chan
        selector = Selector()
        selector.add("data", data_chan)
        selector.add("stop", self._stop)
        loop = asyncio.get_running_loop()
        graceful = False
        try:
            while True:
                self.status.update("data-spooler", "Idle")
                event, value = await selector.next()
                if event == "stop":
                    deadline = time.monotonic() + STOP_DRAIN_TIMEOUT
                    for key, raw in drain(data_chan):
                        if time.monotonic() >= deadline:
                            self.logger.warn("Lost spool entries on stop")
                            break
                        await loop.run_in_executor(None, self._store, key, raw)
                    graceful = True
                    return
                self.status.update("data-spooler", "Spooling data")
                key, raw = value
                await loop.run_in_executor(None, self._store, key, raw)
        except OSError as e:
            self.logger.error(f"Spool directory {self.data_dir} is not writable: {e}")
            self._data_chan = None
        finally:
            selector.close()
            if graceful:
                self.logger.info("Stop")
                self.status.update("data-spooler", "Stopped")
            else:
                self.logger.error("Crash")
                self.status.update("data-spooler", "Crashed")

    def _store(self, key: str, raw: bytes) -> None:
        """Write one entry; raises OSError only if the spool directory is unusable"""
        tmp = None
        try:
            fd, tmp = tempfile.mkstemp(dir=self.trash_dir, prefix=f"{key}.")
            with os.fdopen(fd, 'wb') as f:
                f.write(raw)
            os.replace(tmp, os.path.join(self.data_dir, key))
        except OSError as e:
            if tmp is not None and os.path.exists(tmp):
                os.remove(tmp)
            if e.errno in FATAL_ERRNOS:
                raise
            self.logger.error(f"Cannot spool {key}: {e}")
            return
        self.logger.debug(f"Spooled {key}")

    def get_status(self) -> dict:
        self.status.update("data-spooler-count", str(self.count()))
        return self.status.all()
