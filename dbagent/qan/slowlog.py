"""
DB Agent - QAN Slow Log Worker Module

Parses one interval of the slow log: rotates the log when it grew past
max_slow_log_size, fingerprints and aggregates every event between the
interval's offsets, and reports where parsing stopped.
"""

import os
import threading
import time
from typing import Callable, Dict, Optional

from ..data.stats import humanize_bytes
from ..status import Status
from .config import Config
from .event import EventAggregator
from .fingerprint import class_id, fingerprint
from .interval import Interval
from .parser import SlowLogParser
from .worker import Result, Worker


class SlowLogWorker(Worker):
    def __init__(self, logger, config: Config, conn, name: str = "qan-worker",
                 now_func: Callable[[], float] = time.time,
                 monotonic: Callable[[], float] = time.monotonic,
                 fingerprint_func: Callable[[str], str] = fingerprint):
        """Initialize slow log worker

        Args:
            logger: Logger instance
            config: QAN config of the analyzer
            conn: MySQL connector, used only to rotate the slow log
            name: Worker name, also its status key
            now_func: Wall clock, names rotated slow logs
            monotonic: Run time clock
            fingerprint_func: Query fingerprinter
        """
        self.logger = logger
        self.config = config
        self.conn = conn
        self.name = name
        self.now_func = now_func
        self.monotonic = monotonic
        self.fingerprint_func = fingerprint_func
        self.interval: Optional[Interval] = None
        self.old_slow_logs: Dict[int, str] = {}
        self._status = Status([name])
        self._stop = threading.Event()

    def setup(self, interval: Interval) -> None:
        self.logger.debug(f"Setup: {interval}")
        self._stop.clear()
        max_size = self.config.max_slow_log_size
        if max_size > 0 and interval.end_offset >= max_size:
            self.logger.info(f"Rotating slow log: {humanize_bytes(interval.end_offset)} >= "
                             f"{humanize_bytes(max_size)}")
            try:
                self.rotate_slow_log(interval)
            except Exception as e:
                self.logger.error(f"Cannot rotate slow log: {e}")
        self.interval = interval

    def rotate_slow_log(self, interval: Interval) -> None:
        """Move the slow log aside and point the interval at the moved file

        The interval keeps its start offset and ends at the moved file's
        size, so no events are lost.
        """
        self._status.update(self.name, "Rotating slow log")
        try:
            self.conn.connect(2)
            try:
                # Stop the slow log so it is not moved while MySQL writes to it
                self.conn.set(self.config.stop)
                rotated = f"{interval.filename}-{int(self.now_func())}"
                os.rename(interval.filename, rotated)
                self.conn.set(self.config.start)
            finally:
                self.conn.close()
            interval.filename = rotated
            interval.end_offset = os.path.getsize(rotated)
            if self.config.remove_old_slow_logs:
                self.old_slow_logs[interval.number] = rotated
        finally:
            self._status.update(self.name, "Idle")

    def run(self) -> Optional[Result]:
        interval = self.interval
        job = f"{interval.filename} {interval.start_offset}-{interval.end_offset}"
        self._status.update(self.name, f"Starting job {interval.number}")
        try:
            return self._run(interval, job)
        finally:
            self._status.update(self.name, "Idle")

    def _run(self, interval: Interval, job: str) -> Result:
        aggregator = EventAggregator(self.config.example_queries)
        result = Result(global_class=aggregator.global_class)

        if interval.end_offset < interval.start_offset:
            # Slow log was truncated; nothing between the offsets is valid
            self.logger.warn(f"Slow log {interval.filename} was truncated: {job}")
            result.global_class, result.classes = aggregator.finalize()
            result.stop_offset = os.path.getsize(interval.filename)
            return result

        job_size = interval.end_offset - interval.start_offset
        progress = "Not started"
        rate_type, rate_limit = "", 0
        t0 = self.monotonic()
        stop_offset = None

        with open(interval.filename, 'rb') as f:
            for event in SlowLogParser(f, interval.start_offset).events():
                runtime = self.monotonic() - t0
                pct = event.offset / interval.end_offset * 100 if interval.end_offset else 100.0
                progress = (f"{pct:.1f}% {event.offset}/{interval.end_offset} "
                            f"{job_size} {runtime:.1f}s")
                self._status.update(self.name, f"Parsing {interval.filename}: {progress}")

                if self._stop.is_set():
                    self.logger.debug("Run:stop")
                    stop_offset = event.offset
                    break

                if runtime >= self.config.worker_run_time:
                    result.error = f"Timeout parsing {job}: {progress}"
                    self.logger.warn(result.error)
                    stop_offset = event.offset
                    break

                # The log grows while it is parsed; the first event past the
                # end offset belongs to the next interval.
                if event.offset >= interval.end_offset:
                    stop_offset = event.offset
                    break

                if event.rate_type:
                    if rate_type:
                        if rate_type != event.rate_type or rate_limit != event.rate_limit:
                            result.error = (f"Slow log has mixed rate limits: {rate_type}/{rate_limit} "
                                            f"and {event.rate_type}/{event.rate_limit}")
                            self.logger.warn(result.error)
                            stop_offset = event.offset
                            break
                    else:
                        rate_type, rate_limit = event.rate_type, event.rate_limit

                try:
                    fp = self.fingerprint_func(event.query)
                except Exception:
                    self.logger.warn(f"Cannot fingerprint '{event.query}'")
                    continue
                aggregator.add_event(event, class_id(fp), fp)

            if stop_offset is None:
                # Reached the end of the file
                stop_offset = f.tell()

        self._status.update(self.name, f"Finalizing job {interval.number}")
        result.global_class, result.classes = aggregator.finalize()
        result.stop_offset = stop_offset
        result.run_time = self.monotonic() - t0
        self.logger.info(f"Parsed {job}: {progress}")
        return result

    def stop(self) -> None:
        self._stop.set()

    def cleanup(self) -> None:
        for number, filename in list(self.old_slow_logs.items()):
            self._status.update(self.name, f"Removing slow log {filename}")
            try:
                os.remove(filename)
            except OSError as e:
                self.logger.warn(f"Cannot remove {filename}: {e}")
                continue
            del self.old_slow_logs[number]
            self.logger.info(f"Removed {filename}")
        self._status.update(self.name, "Idle")

    def status(self) -> Dict[str, str]:
        return self._status.all()
