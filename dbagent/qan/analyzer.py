"""
DB Agent - QAN Analyzer Module

An analyzer runs a worker at every interval of one MySQL instance. It owns
MySQL for QAN: it configures it (retrying forever), takes over slow log
rotation, reconfigures it after a restart and runs the stop queries when
it stops. Workers only run while MySQL is configured, one at a time, and
each result becomes one spooled report.
"""

import asyncio
import time
import traceback
from typing import Awaitable, Callable, Dict, List, Optional

from ..backoff import Backoff
from ..channels import Selector, offer
from ..database import Query
from ..status import Status
from ..ticker import began
from .config import Config
from .interval import Interval, IntervalIter
from .report import make_report
from .worker import Worker

ROTATION_MIN_SIZE = 4096
EARLY_START_AFTER = 60.0


class Analyzer:
    def __init__(self, logger, config: Config, iter: IntervalIter, conn,
                 restart_chan: asyncio.Queue, worker: Worker, clock, spool,
                 now_func: Callable[[], float] = time.time,
                 backoff: Optional[Backoff] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """Initialize analyzer

        Args:
            logger: Logger instance; its service name is the analyzer name
            config: QAN config
            iter: Interval iterator fed by the analyzer's clock subscription
            conn: MySQL connector of the instance
            restart_chan: Receives True when MySQL restarted
            worker: Slow log or Performance Schema worker
            clock: Shared ticker Clock
            spool: Object with write(service, data), the data service
            now_func: Wall clock
            backoff: Configure retry backoff
            sleep: Sleep used between configure tries
        """
        self.logger = logger
        self.config = config
        self.iter = iter
        self.conn = conn
        self.restart_chan = restart_chan
        self.worker = worker
        self.clock = clock
        self.spool = spool
        self.now_func = now_func
        self.backoff = backoff or Backoff()
        self.sleep = sleep

        self.name = logger.service
        self._status = Status([self.name, f"{self.name}-last-interval", f"{self.name}-next-interval"])
        self._configured_chan: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._worker_done_chan: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._configure_task: Optional[asyncio.Task] = None
        self._worker_task: Optional[asyncio.Future] = None

    def __str__(self) -> str:
        return self.name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.ensure_future(self.run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self._stop.set()
        await task

    def status(self) -> Dict[str, str]:
        key = f"{self.name}-next-interval"
        if self.running:
            self._status.update(key, f"{self.clock.eta(self.iter.tick_chan):.1f}s")
        else:
            self._status.update(key, "")
        return self._status.merge(self.worker.status())

    # ----------------------------------------------------------------------

    def _set(self, queries: List[Query], take_over_rotation: bool = False) -> None:
        """Connect and run queries (blocking)"""
        self.conn.connect(1)
        try:
            self.conn.set(queries)
            if take_over_rotation:
                self._take_over_rotation()
        finally:
            self.conn.close()

    def _take_over_rotation(self) -> None:
        # Percona Server rotates the slow log itself when max_slowlog_size
        # is set; the worker must own rotation to keep offsets contiguous.
        value = self.conn.get_global_var("max_slowlog_size")
        try:
            size = int(value) if value is not None else 0
        except ValueError:
            return
        if size < ROTATION_MIN_SIZE:
            return
        self.logger.info(f"Taking over slow log rotation from MySQL (max_slowlog_size={size})")
        if not self.config.max_slow_log_size:
            self.config.max_slow_log_size = size
        self.conn.set([Query("SET GLOBAL max_slowlog_size = 0")])

    async def configure_mysql(self) -> None:
        """Run the start queries until they succeed, then signal configured"""
        loop = asyncio.get_running_loop()
        take_over = self.config.collect_from == "slowlog"
        while True:
            wait = self.backoff.wait()
            if wait:
                self.logger.debug(f"configureMySQL:wait {wait:.1f}s")
                await self.sleep(wait)
            try:
                await loop.run_in_executor(None, self._set, self.config.start, take_over)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.warn(f"Cannot configure MySQL: {e}")
                continue
            self.backoff.success()
            self.logger.debug("configureMySQL:configured")
            offer(self._configured_chan, True)
            return

    def _start_configure(self) -> None:
        self._configure_task = asyncio.ensure_future(self.configure_mysql())

    async def _stop_configure(self) -> None:
        task, self._configure_task = self._configure_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run(self) -> None:
        mysql_configured = False
        crashed = False
        last_ts = None
        current: Optional[Interval] = None

        self._start_configure()
        selector = Selector()
        selector.add("interval", self.iter.interval_chan)
        selector.add("worker_done", self._worker_done_chan)
        selector.add("configured", self._configured_chan)
        selector.add("restart", self.restart_chan)
        selector.add("stop", self._stop)
        try:
            while True:
                self._status.update(self.name, "Idle" if mysql_configured else "Idle (MySQL not configured)")
                event, value = await selector.next()

                if event == "interval":
                    interval = value
                    if not mysql_configured:
                        self.logger.debug(f"run:interval:{interval.number}:skip (mysql not configured)")
                        continue
                    if self._worker_task is not None:
                        self.logger.warn(f"Skipping interval '{interval}' because interval "
                                         f"'{current}' is still being parsed")
                        continue
                    self._status.update(self.name, f"Starting interval '{interval}'")
                    current = interval
                    self._worker_task = asyncio.ensure_future(self.run_worker(interval))

                elif event == "worker_done":
                    interval = value
                    self._status.update(self.name, f"Cleaning up after interval '{interval}'")
                    self._worker_task = None
                    if interval.start_time is not None and (last_ts is None or interval.start_time > last_ts):
                        t0 = interval.start_time.strftime("%Y-%m-%d %H:%M:%S")
                        if self.config.collect_from == "slowlog" and interval.stop_time is not None:
                            t1 = interval.stop_time.strftime("%H:%M:%S UTC")
                            last = f"{t0} to {t1}"
                        else:
                            last = t0
                        self._status.update(f"{self.name}-last-interval", last)
                        last_ts = interval.start_time

                elif event == "configured":
                    mysql_configured = True
                    self._configure_task = None
                    self.iter.start()
                    self._start_early()

                elif event == "restart":
                    self.logger.info("MySQL restarted")
                    # While not configured, configure_mysql is still retrying
                    if mysql_configured:
                        mysql_configured = False
                        await self.iter.stop()
                        self._start_configure()

                elif event == "stop":
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            crashed = True
            self.logger.error(f"{self.name} crashed: {e}\n{traceback.format_exc()}")
        finally:
            selector.close()
            await self._shutdown(crashed)

    def _start_early(self) -> None:
        # If the first tick is more than a minute away, start the first
        # interval at the beginning of the current period so data is
        # reported sooner.
        eta = self.clock.eta(self.iter.tick_chan)
        if eta > EARLY_START_AFTER:
            ts = began(self.config.interval, self.now_func())
            self.logger.info(f"First interval began at {ts}")
            offer(self.iter.tick_chan, ts)
        else:
            self.logger.info(f"First interval begins in {eta:.1f} seconds")

    async def _shutdown(self, crashed: bool) -> None:
        self._status.update(self.name, "Stopping worker")
        self.logger.info("Stopping worker")
        self.worker.stop()
        task, self._worker_task = self._worker_task, None
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

        self._status.update(self.name, "Stopping interval iter")
        self.logger.info("Stopping interval iter")
        await self.iter.stop()

        await self._stop_configure()

        self._status.update(self.name, "Stopping QAN on MySQL")
        self.logger.info("Stopping QAN on MySQL")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._set, self.config.stop)
        except Exception as e:
            self.logger.warn(f"Cannot stop QAN on MySQL: {e}")

        self._status.update(self.name, "Crashed" if crashed else "Stopped")

    # ----------------------------------------------------------------------

    def process(self, interval: Interval) -> Optional[dict]:
        """Set up, run and clean up the worker for one interval (blocking)

        Returns:
            The report, or None if there is nothing to spool
        """
        try:
            self.worker.setup(interval)
        except Exception as e:
            self.logger.warn(f"Cannot set up worker for interval '{interval}': {e}")
            return None
        try:
            t0 = time.monotonic()
            result = self.worker.run()
            run_time = time.monotonic() - t0
        finally:
            try:
                self.worker.cleanup()
            except Exception as e:
                self.logger.warn(f"Worker cleanup failed: {e}")
        if result is None:
            if self.config.collect_from == "slowlog":
                self.logger.error(f"Nil result for interval '{interval}'")
            return None
        result.run_time = run_time
        return make_report(self.config, interval, result)

    async def run_worker(self, interval: Interval) -> None:
        loop = asyncio.get_running_loop()
        try:
            report = await loop.run_in_executor(None, self.process, interval)
            if report is not None:
                try:
                    # "qan", not the analyzer name: reports are routed by service
                    self.spool.write("qan", report)
                except Exception as e:
                    self.logger.warn(f"Lost report: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"{self.name}-worker crashed: '{interval}': {e}\n{traceback.format_exc()}")
        finally:
            offer(self._worker_done_chan, interval)
