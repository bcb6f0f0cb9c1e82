"""
DB Agent - MySQL Restart Monitor Module

Polls the uptime of every watched MySQL instance and notifies subscribers
when an instance restarted. A restart is detected when the uptime is lower
than the last uptime plus the time elapsed since it was read, so a restart
is not missed even if the agent could not check for longer than the
server had been up.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional

from ..channels import Selector, offer
from ..errors import MySQLError
from ..status import Status

MONITOR_NAME = "mrms-monitor"
DEFAULT_INTERVAL = 1.0
GLOBAL_CHAN_SIZE = 10


class MysqlInstance:
    """One watched DSN: its connector, last uptime and subscribers"""

    def __init__(self, logger, conn, last_uptime: int, last_check: float):
        self.logger = logger
        self.conn = conn
        self.last_uptime = last_uptime
        self.last_check = last_check
        self.subscribers: List[asyncio.Queue] = []

    @property
    def dsn(self) -> str:
        return self.conn.dsn

    def fetch_uptime(self) -> int:
        """Open a short-lived connection and read the uptime (blocking)"""
        self.conn.connect(1)
        try:
            return self.conn.uptime()
        finally:
            self.conn.close()

    def check_if_restarted(self, current_uptime: int, now: float) -> bool:
        elapsed = int(now) - int(self.last_check)
        expected = self.last_uptime + elapsed
        self.logger.debug(f"last_uptime={self.last_uptime} elapsed={elapsed} "
                          f"expected_uptime={expected} current_uptime={current_uptime}")
        self.last_uptime = current_uptime
        self.last_check = now
        return current_uptime < expected

    def notify(self) -> None:
        for chan in self.subscribers:
            if not offer(chan, True):
                self.logger.warn(f"Cannot notify MySQL restart subscriber of {self.dsn}: channel full")


class Monitor:
    def __init__(self, logger, factory, now_func: Callable[[], float] = time.time):
        """Initialize restart monitor

        Args:
            logger: Logger instance
            factory: ConnectionFactory, makes one connector per DSN
            now_func: Wall clock
        """
        self.logger = logger
        self.factory = factory
        self.now_func = now_func
        self.instances: Dict[str, MysqlInstance] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.status = Status([MONITOR_NAME])
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def add(self, dsn: str) -> asyncio.Queue:
        """Watch dsn and return a channel that receives True on restart

        Raises:
            MySQLError: If MySQL cannot be reached to read the first uptime
        """
        async with self._lock:
            instance = self.instances.get(dsn)
            if instance is None:
                instance = await self._create_instance(dsn)
                self.instances[dsn] = instance
            chan: asyncio.Queue = asyncio.Queue(maxsize=1)
            instance.subscribers.append(chan)
            return chan

    async def _create_instance(self, dsn: str) -> MysqlInstance:
        conn = self.factory.make(dsn)
        loop = asyncio.get_running_loop()

        def first_uptime() -> int:
            conn.connect(2)
            try:
                return conn.uptime()
            finally:
                conn.close()

        try:
            uptime = await loop.run_in_executor(None, first_uptime)
        except MySQLError as e:
            self.logger.warn(f"Unable to connect to MySQL: {e}")
            raise
        return MysqlInstance(self.logger, conn, uptime, self.now_func())

    async def remove(self, dsn: str, chan: asyncio.Queue) -> None:
        async with self._lock:
            instance = self.instances.get(dsn)
            if instance is None:
                return
            instance.subscribers = [c for c in instance.subscribers if c is not chan]
            if not instance.subscribers:
                del self.instances[dsn]

    def global_subscribe(self) -> asyncio.Queue:
        """Channel that receives the DSN of any watched instance that restarts"""
        chan: asyncio.Queue = asyncio.Queue(maxsize=GLOBAL_CHAN_SIZE)
        self.global_subscribers.append(chan)
        return chan

    def global_unsubscribe(self, chan: asyncio.Queue) -> None:
        self.global_subscribers = [c for c in self.global_subscribers if c is not chan]

    async def check(self) -> List[str]:
        """Check every instance once

        Returns:
            DSNs of the instances that restarted
        """
        loop = asyncio.get_running_loop()
        restarted = []
        async with self._lock:
            instances = list(self.instances.values())
        for instance in instances:
            try:
                uptime = await loop.run_in_executor(None, instance.fetch_uptime)
            except MySQLError as e:
                self.logger.warn(f"Unable to check MySQL uptime: {e}")
                continue
            if instance.check_if_restarted(uptime, self.now_func()):
                self.logger.info(f"MySQL restart detected for {instance.conn}")
                restarted.append(instance.dsn)
                instance.notify()
                for chan in self.global_subscribers:
                    if not offer(chan, instance.dsn):
                        self.logger.warn("Cannot notify MySQL restart global subscriber: channel full")
        return restarted

    def start(self, interval: float = DEFAULT_INTERVAL) -> None:
        self._stop = asyncio.Event()
        self._task = asyncio.ensure_future(self.run(interval))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self._stop.set()
        await task

    async def run(self, interval: float) -> None:
        self.status.update(MONITOR_NAME, "Started")
        selector = Selector()
        selector.add("stop", self._stop)
        try:
            while True:
                self.status.update(MONITOR_NAME, "Checking")
                try:
                    await self.check()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.error(f"MySQL Restart Monitor Service (MRMS) check failed: {e}")
                self.status.update(MONITOR_NAME, "Idle")
                event, _ = await selector.next(timeout=interval)
                if event == "stop":
                    return
        finally:
            selector.close()
            self.status.update(MONITOR_NAME, "Stopped")

    def get_status(self) -> dict:
        return self.status.all()
