"""
DB Agent - QAN Config Module

Query Analytics config for one MySQL instance, saved as
config/qan-<UUID>.conf.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..database import Query
from ..errors import ConfigError

COLLECT_FROM = ("slowlog", "perfschema")

DEFAULT_INTERVAL = 60
DEFAULT_WORKER_RUN_TIME = 55
DEFAULT_REPORT_LIMIT = 200

MAX_INTERVAL = 3600
MAX_WORKER_RUN_TIME = 1200


@dataclass
class Config:
    uuid: str
    start: List[Query] = field(default_factory=list)
    stop: List[Query] = field(default_factory=list)
    interval: int = DEFAULT_INTERVAL
    worker_run_time: int = DEFAULT_WORKER_RUN_TIME
    max_slow_log_size: int = 0
    remove_old_slow_logs: bool = False
    example_queries: bool = True
    collect_from: str = "slowlog"
    report_limit: int = DEFAULT_REPORT_LIMIT

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> 'Config':
        """Build and validate a config from its JSON object

        Raises:
            ConfigError: If a field is missing, has the wrong type or is out of range
        """
        if not isinstance(d, dict):
            raise ConfigError("QAN config must be a JSON object")
        try:
            config = cls(
                uuid=d.get('uuid') or "",
                start=[Query.from_value(q) for q in d.get('start') or []],
                stop=[Query.from_value(q) for q in d.get('stop') or []],
                interval=int(d.get('interval', DEFAULT_INTERVAL)),
                worker_run_time=int(d.get('worker_run_time', DEFAULT_WORKER_RUN_TIME)),
                max_slow_log_size=int(d.get('max_slow_log_size', 0)),
                remove_old_slow_logs=bool(d.get('remove_old_slow_logs', False)),
                example_queries=bool(d.get('example_queries', True)),
                collect_from=d.get('collect_from') or "slowlog",
                report_limit=int(d.get('report_limit', DEFAULT_REPORT_LIMIT)),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigError(f"Invalid QAN config: {e}")
        config.validate()
        return config

    def validate(self) -> None:
        if not self.uuid:
            raise ConfigError("QAN config has no MySQL instance uuid")
        if self.collect_from not in COLLECT_FROM:
            raise ConfigError(f"Invalid collect_from: {self.collect_from} (expected slowlog or perfschema)")
        if self.collect_from == "slowlog":
            if not self.start:
                raise ConfigError("QAN config start queries are empty")
            if not self.stop:
                raise ConfigError("QAN config stop queries are empty")
        if not 1 <= self.interval <= MAX_INTERVAL:
            raise ConfigError(f"interval must be between 1 and {MAX_INTERVAL} seconds")
        if not 1 <= self.worker_run_time <= MAX_WORKER_RUN_TIME:
            raise ConfigError(f"worker_run_time must be between 1 and {MAX_WORKER_RUN_TIME} seconds")
        if self.max_slow_log_size < 0:
            raise ConfigError("max_slow_log_size must be >= 0")
        if self.report_limit < 0:
            raise ConfigError("report_limit must be >= 0")

    def to_dict(self) -> dict:
        return {
            'uuid': self.uuid,
            'start': [q.to_dict() for q in self.start],
            'stop': [q.to_dict() for q in self.stop],
            'interval': self.interval,
            'worker_run_time': self.worker_run_time,
            'max_slow_log_size': self.max_slow_log_size,
            'remove_old_slow_logs': self.remove_old_slow_logs,
            'example_queries': self.example_queries,
            'collect_from': self.collect_from,
            'report_limit': self.report_limit,
        }
