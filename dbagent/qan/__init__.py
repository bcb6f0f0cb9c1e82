"""
DB Agent - QAN Package

Query Analytics: per MySQL instance, collect queries from the slow log or
Performance Schema at every interval, aggregate them into classes and
spool one report per interval.
"""

from .analyzer import Analyzer
from .config import Config
from .fingerprint import class_id, fingerprint
from .interval import FileIntervalIter, Interval, PerfSchemaIntervalIter
from .manager import Manager
from .perfschema import PerfSchemaWorker
from .report import make_report
from .slowlog import SlowLogWorker
from .worker import Result, Worker

__all__ = [
    'Analyzer', 'Config', 'FileIntervalIter', 'Interval', 'Manager', 'PerfSchemaIntervalIter',
    'PerfSchemaWorker', 'Result', 'SlowLogWorker', 'Worker', 'class_id', 'fingerprint', 'make_report',
]
