"""
DB Agent - QAN Performance Schema Worker Module

Reads performance_schema.events_statements_summary_by_digest at every
interval and reports the difference from the previous snapshot. The first
snapshot only primes the worker: two snapshots are needed for a result.

A class is one digest; its rows are the schemas the digest ran in. Only
rows present in both snapshots whose COUNT_STAR increased contribute.
Per class, total_queries is the number of contributing schemas, counts and
sums are the sum of the row deltas, min and max are taken across the rows,
and avg is the average of the row averages.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..status import Status
from .event import BoolStats, GlobalClass, NumberStats, QueryClass, TimeStats
from .interval import Interval
from .worker import Result, Worker

PICO = 1e-12


@dataclass
class DigestClass:
    digest_text: str
    rows: Dict[str, dict] = field(default_factory=dict)  # keyed on schema


Snapshot = Dict[str, DigestClass]  # keyed on class id


def digest_class_id(digest: str) -> str:
    return digest[16:32].upper()


def _n(row: dict, key: str) -> int:
    return int(row.get(key) or 0)


class PerfSchemaWorker(Worker):
    def __init__(self, logger, conn, name: str = "qan-worker",
                 get_rows: Optional[Callable[[], List[dict]]] = None,
                 get_text: Optional[Callable[[str], str]] = None):
        """Initialize Performance Schema worker

        Args:
            logger: Logger instance
            conn: MySQL connector
            name: Worker name, also its status key
            get_rows: Returns all digest rows, defaults to conn.digest_rows
            get_text: Returns the digest text of a digest, defaults to conn.digest_text
        """
        self.logger = logger
        self.conn = conn
        self.name = name
        self.get_rows = get_rows or conn.digest_rows
        self.get_text = get_text or conn.digest_text
        self.interval: Optional[Interval] = None
        self.prev: Snapshot = {}
        self.curr: Optional[Snapshot] = None
        self._stop = threading.Event()
        self._status = Status([name])

    def setup(self, interval: Interval) -> None:
        self.interval = interval
        self.curr = None
        self._stop.clear()

    def run(self) -> Optional[Result]:
        self.logger.debug(f"Run:call:{self.interval.number}")
        if self._stop.is_set():
            return None
        try:
            self.conn.connect(1)
        except Exception as e:
            self.logger.warn(f"Cannot connect to MySQL: {e}")
            return None
        try:
            self.curr = self.get_snapshot(self.prev)
        finally:
            self.conn.close()
        if self.curr is None:
            return None
        return self.prepare_result(self.prev, self.curr)

    def cleanup(self) -> None:
        self._status.update(self.name, "Idle")
        if self.curr is not None:
            self.prev = self.curr

    def stop(self) -> None:
        self._stop.set()

    def status(self) -> Dict[str, str]:
        return self._status.all()

    def get_snapshot(self, prev: Snapshot) -> Optional[Snapshot]:
        """Returns None if the worker was stopped while reading rows"""
        self._status.update(self.name, "Processing rows")
        curr: Snapshot = {}
        for row in self.get_rows():
            if self._stop.is_set():
                self._status.update(self.name, "Idle")
                return None
            digest = row.get('digest') or ""
            if not digest:
                continue
            schema = row.get('schema_name') or ""
            class_id = digest_class_id(digest)
            digest_class = curr.get(class_id)
            if digest_class is not None:
                if schema in digest_class.rows:
                    self.logger.error(f"Got class twice: {schema} {digest}")
                    continue
                digest_class.rows[schema] = row
                continue
            if class_id in prev:
                digest_text = prev[class_id].digest_text
            else:
                try:
                    digest_text = self.get_text(digest)
                except Exception as e:
                    self.logger.error(f"Cannot get digest text of {digest}: {e}")
                    continue
            curr[class_id] = DigestClass(digest_text, {schema: row})
        self._status.update(self.name, "Idle")
        return curr

    def prepare_result(self, prev: Snapshot, curr: Snapshot) -> Optional[Result]:
        self._status.update(self.name, "Preparing result")
        global_class = GlobalClass()
        classes = []
        for class_id, digest_class in curr.items():
            prev_class = prev.get(class_id)
            if prev_class is None:
                continue
            query_class = self._class_delta(class_id, digest_class, prev_class)
            if query_class is None:
                continue
            classes.append(query_class)
            global_class.add_class(query_class)
        self._status.update(self.name, "Idle")
        if not classes:
            return None
        # Class stats are pre-aggregated; only the global totals are finalized.
        global_class.finalize()
        return Result(global_class=global_class, classes=classes)

    def _class_delta(self, class_id: str, curr: DigestClass, prev: DigestClass) -> Optional[QueryClass]:
        n = 0
        count = timer = lock = 0
        affected = sent = examined = merge_passes = 0
        tmp_disk = tmp = full_join = full_scan = 0
        min_timer: Optional[int] = None
        max_timer = 0
        avg_sum = 0
        first_seen: Optional[datetime] = None
        last_seen: Optional[datetime] = None

        for schema, row in curr.rows.items():
            prev_row = prev.rows.get(schema)
            if prev_row is None:
                continue
            delta = _n(row, 'count_star') - _n(prev_row, 'count_star')
            if delta <= 0:
                continue
            n += 1
            count += delta
            timer += _n(row, 'sum_timer_wait') - _n(prev_row, 'sum_timer_wait')
            lock += _n(row, 'sum_lock_time') - _n(prev_row, 'sum_lock_time')
            affected += _n(row, 'sum_rows_affected') - _n(prev_row, 'sum_rows_affected')
            sent += _n(row, 'sum_rows_sent') - _n(prev_row, 'sum_rows_sent')
            examined += _n(row, 'sum_rows_examined') - _n(prev_row, 'sum_rows_examined')
            merge_passes += _n(row, 'sum_sort_merge_passes') - _n(prev_row, 'sum_sort_merge_passes')
            tmp_disk += _n(row, 'sum_created_tmp_disk_tables') - _n(prev_row, 'sum_created_tmp_disk_tables')
            tmp += _n(row, 'sum_created_tmp_tables') - _n(prev_row, 'sum_created_tmp_tables')
            full_join += _n(row, 'sum_select_full_join') - _n(prev_row, 'sum_select_full_join')
            full_scan += _n(row, 'sum_select_scan') - _n(prev_row, 'sum_select_scan')
            row_min = _n(row, 'min_timer_wait')
            if min_timer is None or row_min < min_timer:
                min_timer = row_min
            max_timer = max(max_timer, _n(row, 'max_timer_wait'))
            avg_sum += _n(row, 'avg_timer_wait')
            if row.get('first_seen') is not None:
                first_seen = row['first_seen'] if first_seen is None else min(first_seen, row['first_seen'])
            if row.get('last_seen') is not None:
                last_seen = row['last_seen'] if last_seen is None else max(last_seen, row['last_seen'])

        if n == 0:
            return None

        query_class = QueryClass(class_id, curr.digest_text)
        query_class.total_queries = n
        query_class.first_seen = first_seen
        query_class.last_seen = last_seen
        metrics = query_class.metrics
        metrics.time_metrics['Query_time'] = TimeStats(
            cnt=count, sum=timer * PICO, min=(min_timer or 0) * PICO,
            max=max_timer * PICO, avg=(avg_sum / n) * PICO)
        metrics.time_metrics['Lock_time'] = TimeStats(cnt=count, sum=lock * PICO)
        metrics.number_metrics['Rows_affected'] = NumberStats(cnt=count, sum=affected)
        metrics.number_metrics['Rows_sent'] = NumberStats(cnt=count, sum=sent)
        metrics.number_metrics['Rows_examined'] = NumberStats(cnt=count, sum=examined)
        metrics.number_metrics['Merge_passes'] = NumberStats(cnt=count, sum=merge_passes)
        metrics.bool_metrics['Tmp_table_on_disk'] = BoolStats(cnt=count, sum=tmp_disk)
        metrics.bool_metrics['Tmp_table'] = BoolStats(cnt=count, sum=tmp)
        metrics.bool_metrics['Full_join'] = BoolStats(cnt=count, sum=full_join)
        metrics.bool_metrics['Full_scan'] = BoolStats(cnt=count, sum=full_scan)
        return query_class
