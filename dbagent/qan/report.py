"""
DB Agent - QAN Report Module

Turns a worker Result into the report spooled for the API.
"""

from ..proto import format_ts
from .config import Config
from .event import QueryClass
from .interval import Interval
from .worker import Result

LRQ_CLASS_ID = "0"


def make_report(config: Config, interval: Interval, result: Result) -> dict:
    """Build a report, top classes first

    Classes are sorted by total Query_time, descending. If report_limit is
    set and there are more classes, the rest are folded into one
    low-ranked queries class with id "0".
    """
    classes = sorted(result.classes, key=lambda c: c.query_time_sum(), reverse=True)
    limit = config.report_limit
    if limit > 0 and len(classes) > limit:
        lrq = QueryClass(LRQ_CLASS_ID, "")
        for query_class in classes[limit:]:
            add_query(lrq, query_class)
        classes = classes[:limit] + [lrq]

    report = {
        'uuid': config.uuid,
        'start_ts': format_ts(interval.start_time),
        'end_ts': format_ts(interval.stop_time),
        'run_time': result.run_time,
        'global': result.global_class.to_dict(),
        'class': [c.to_dict() for c in classes],
    }
    if config.collect_from == "slowlog":
        report.update({
            'slow_log_file': interval.filename,
            'start_offset': interval.start_offset,
            'end_offset': interval.end_offset,
            'stop_offset': result.stop_offset,
        })
    if result.error:
        report['error'] = result.error
    return report


def add_query(dst: QueryClass, src: QueryClass) -> None:
    """Fold src into dst: totals add, min and max widen"""
    dst.total_queries += src.total_queries
    dst.metrics.merge(src.metrics)
    for stats in list(dst.metrics.time_metrics.values()) + list(dst.metrics.number_metrics.values()):
        stats.finalize()
