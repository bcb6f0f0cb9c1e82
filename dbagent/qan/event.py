"""
DB Agent - QAN Event Aggregation Module

Per-class and global metric statistics for query events. Slow log events
are added one by one and finalized into cnt/sum/min/max/avg/med/p95;
Performance Schema classes arrive pre-aggregated and are merged.
"""

import math
from datetime import datetime
from typing import Dict, List, Optional

from ..proto import format_ts


def _percentile(values: List[float], p: float) -> float:
    if not values:
        return 0
    index = max(int(math.ceil(p * len(values))) - 1, 0)
    return values[min(index, len(values) - 1)]


class TimeStats:
    """Statistics of a time metric, in seconds"""

    def __init__(self, cnt: int = 0, sum: float = 0.0, min: Optional[float] = None,
                 max: Optional[float] = None, avg: float = 0.0):
        self.cnt = cnt
        self.sum = sum
        self.min = min
        self.max = max
        self.avg = avg
        self.med = 0.0
        self.p95 = 0.0
        self._values: List[float] = []

    def add(self, value) -> None:
        self.cnt += 1
        self.sum += value
        if self.min is None or value < self.min:
            self.min = value
        if self.max is None or value > self.max:
            self.max = value
        self._values.append(value)

    def merge(self, other: 'TimeStats') -> None:
        """Add pre-aggregated stats"""
        self.cnt += other.cnt
        self.sum += other.sum
        if other.min is not None and (self.min is None or other.min < self.min):
            self.min = other.min
        if other.max is not None and (self.max is None or other.max > self.max):
            self.max = other.max

    def finalize(self) -> None:
        if self.cnt:
            self.avg = self.sum / self.cnt
        if self._values:
            values = sorted(self._values)
            self.med = _percentile(values, 0.5)
            self.p95 = _percentile(values, 0.95)
            self._values = []

    def to_dict(self) -> dict:
        return {
            'cnt': self.cnt,
            'sum': self.sum,
            'min': self.min if self.min is not None else 0,
            'max': self.max if self.max is not None else 0,
            'avg': self.avg,
            'med': self.med,
            'p95': self.p95,
        }


class NumberStats(TimeStats):
    """Statistics of a counter metric like Rows_examined"""

    def __init__(self, cnt: int = 0, sum: int = 0, min: Optional[int] = None,
                 max: Optional[int] = None, avg: int = 0):
        super().__init__(cnt, sum, min, max, avg)
        self.med = 0
        self.p95 = 0

    def finalize(self) -> None:
        super().finalize()
        if self.cnt:
            self.avg = self.sum // self.cnt


class BoolStats:
    """Count of events and of events where the metric was true"""

    def __init__(self, cnt: int = 0, sum: int = 0):
        self.cnt = cnt
        self.sum = sum

    def add(self, value: bool) -> None:
        self.cnt += 1
        if value:
            self.sum += 1

    def merge(self, other: 'BoolStats') -> None:
        self.cnt += other.cnt
        self.sum += other.sum

    def finalize(self) -> None:
        pass

    def to_dict(self) -> dict:
        return {'cnt': self.cnt, 'sum': self.sum}


class Metrics:
    def __init__(self):
        self.time_metrics: Dict[str, TimeStats] = {}
        self.number_metrics: Dict[str, NumberStats] = {}
        self.bool_metrics: Dict[str, BoolStats] = {}

    def add_event(self, event) -> None:
        for name, value in event.time_metrics.items():
            self.time_metrics.setdefault(name, TimeStats()).add(value)
        for name, value in event.number_metrics.items():
            self.number_metrics.setdefault(name, NumberStats()).add(value)
        for name, value in event.bool_metrics.items():
            self.bool_metrics.setdefault(name, BoolStats()).add(value)

    def merge(self, other: 'Metrics') -> None:
        for name, stats in other.time_metrics.items():
            self.time_metrics.setdefault(name, TimeStats()).merge(stats)
        for name, stats in other.number_metrics.items():
            self.number_metrics.setdefault(name, NumberStats()).merge(stats)
        for name, stats in other.bool_metrics.items():
            self.bool_metrics.setdefault(name, BoolStats()).merge(stats)

    def finalize(self) -> None:
        for group in (self.time_metrics, self.number_metrics, self.bool_metrics):
            for stats in group.values():
                stats.finalize()

    def to_dict(self) -> dict:
        return {
            'time_metrics': {k: v.to_dict() for k, v in sorted(self.time_metrics.items())},
            'number_metrics': {k: v.to_dict() for k, v in sorted(self.number_metrics.items())},
            'bool_metrics': {k: v.to_dict() for k, v in sorted(self.bool_metrics.items())},
        }


class QueryClass:
    """All events sharing one fingerprint"""

    def __init__(self, id: str, fingerprint: str, example: bool = False):
        self.id = id
        self.fingerprint = fingerprint
        self.total_queries = 0
        self.metrics = Metrics()
        self.first_seen: Optional[datetime] = None
        self.last_seen: Optional[datetime] = None
        self.with_example = example
        self.example: Optional[dict] = None
        self._example_time = -1.0

    def add_event(self, event) -> None:
        self.total_queries += 1
        self.metrics.add_event(event)
        if event.ts is not None:
            if self.first_seen is None or event.ts < self.first_seen:
                self.first_seen = event.ts
            if self.last_seen is None or event.ts > self.last_seen:
                self.last_seen = event.ts
        if self.with_example:
            query_time = event.time_metrics.get('Query_time', 0.0)
            if query_time > self._example_time:
                self._example_time = query_time
                self.example = {
                    'query_time': query_time,
                    'db': event.db,
                    'query': event.query,
                    'ts': format_ts(event.ts),
                }

    def query_time_sum(self) -> float:
        stats = self.metrics.time_metrics.get('Query_time')
        return stats.sum if stats else 0.0

    def finalize(self) -> None:
        self.metrics.finalize()

    def to_dict(self) -> dict:
        d = {
            'id': self.id,
            'fingerprint': self.fingerprint,
            'total_queries': self.total_queries,
            'metrics': self.metrics.to_dict(),
            'first_seen': format_ts(self.first_seen),
            'last_seen': format_ts(self.last_seen),
        }
        if self.example is not None:
            d['example'] = self.example
        return d


class GlobalClass:
    """Totals across every class of an interval"""

    def __init__(self):
        self.total_queries = 0
        self.unique_queries = 0
        self.rate_type = ""
        self.rate_limit = 0
        self.metrics = Metrics()

    def add_event(self, event) -> None:
        self.total_queries += 1
        self.metrics.add_event(event)
        if event.rate_type:
            self.rate_type = event.rate_type
            self.rate_limit = event.rate_limit

    def add_class(self, query_class: QueryClass) -> None:
        """Add a pre-aggregated class"""
        self.total_queries += query_class.total_queries
        self.unique_queries += 1
        self.metrics.merge(query_class.metrics)

    def finalize(self, unique_queries: Optional[int] = None) -> None:
        if unique_queries is not None:
            self.unique_queries = unique_queries
        self.metrics.finalize()

    def to_dict(self) -> dict:
        d = {
            'total_queries': self.total_queries,
            'unique_queries': self.unique_queries,
            'metrics': self.metrics.to_dict(),
        }
        if self.rate_type:
            d['rate_type'] = self.rate_type
            d['rate_limit'] = self.rate_limit
        return d


class EventAggregator:
    """Groups events into classes by class id and keeps global totals"""

    def __init__(self, example_queries: bool = False):
        self.example_queries = example_queries
        self.global_class = GlobalClass()
        self.classes: Dict[str, QueryClass] = {}

    def add_event(self, event, id: str, fingerprint: str) -> None:
        query_class = self.classes.get(id)
        if query_class is None:
            query_class = QueryClass(id, fingerprint, self.example_queries)
            self.classes[id] = query_class
        query_class.add_event(event)
        self.global_class.add_event(event)

    def finalize(self):
        """Compute statistics

        Returns:
            (GlobalClass, list of QueryClass)
        """
        for query_class in self.classes.values():
            query_class.finalize()
        self.global_class.finalize(len(self.classes))
        return self.global_class, list(self.classes.values())
