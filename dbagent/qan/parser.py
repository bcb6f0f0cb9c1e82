"""
DB Agent - Slow Log Parser Module

Parses a MySQL/Percona Server slow query log into events. Every event
carries the byte offset of its first header line so a worker can resume
parsing exactly where the previous interval stopped.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import BinaryIO, Dict, FrozenSet, Iterator, Optional

DEFAULT_FILTER_ADMIN = frozenset(["Binlog Dump", "Binlog Dump GTID"])

_HEADER_RE = re.compile(r'^#\s+(Time|User@Host|Query_time|Thread_id|Schema|Bytes_sent|QC_Hit|Filesort'
                        r'|Log_slow_rate_type|InnoDB_|No InnoDB|Tmp_tables|Rows_affected|Merge_passes'
                        r'|Full_scan|Stored_routine|Killed|Last_errno|Priority_queue)')
_ADMIN_RE = re.compile(r'^#\s+administrator command:\s+(.+?);?\s*$')
_USER_HOST_RE = re.compile(r'User@Host:\s+([^\[]*)\[([^\]]*)\]\s+@\s+([^\[]*?)\s*\[([^\]]*)\]')
_METRIC_RE = re.compile(r'(\w+):\s+(\S+)')
_USE_RE = re.compile(r'^use\s+`?([^`;\s]+)`?\s*;\s*$', re.IGNORECASE)
_SET_TIMESTAMP_RE = re.compile(r'^SET\s+timestamp=(\d+);\s*$', re.IGNORECASE)
_SERVER_HEADER_RE = re.compile(r'^(?:\S+, Version: .* started with:|Tcp port: \d+|Time\s+Id\s+Command\s+Argument)')

_IGNORED_KEYS = frozenset(["Thread_id", "Id", "Schema", "Log_slow_rate_type", "Log_slow_rate_limit",
                           "Last_errno", "Killed", "InnoDB_trx_id"])


@dataclass
class Event:
    offset: int
    ts: Optional[datetime] = None
    admin: bool = False
    query: str = ""
    user: str = ""
    host: str = ""
    db: str = ""
    time_metrics: Dict[str, float] = field(default_factory=dict)
    number_metrics: Dict[str, int] = field(default_factory=dict)
    bool_metrics: Dict[str, bool] = field(default_factory=dict)
    rate_type: str = ""
    rate_limit: int = 0


def parse_time(value: str) -> Optional[datetime]:
    """Parse a # Time: value, old (071015 21:43:52) or ISO 8601 format"""
    value = value.strip()
    for fmt in ("%y%m%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ",
                "%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            ts = datetime.strptime(re.sub(r'\s+', ' ', value), fmt)
        except ValueError:
            continue
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts
    return None


class SlowLogParser:
    """Iterate the events of a slow log starting at a byte offset

    The file must be opened in binary mode. Events whose admin command is
    in filter_admin are skipped.
    """

    def __init__(self, file: BinaryIO, start_offset: int = 0,
                 filter_admin: FrozenSet[str] = DEFAULT_FILTER_ADMIN):
        self.file = file
        self.start_offset = start_offset
        self.filter_admin = filter_admin

    def events(self) -> Iterator[Event]:
        self.file.seek(self.start_offset)
        offset = self.start_offset
        event: Optional[Event] = None
        query_lines = []
        ts: Optional[datetime] = None

        for raw in iter(self.file.readline, b''):
            line_offset = offset
            offset += len(raw)
            line = raw.decode('utf-8', errors='replace').rstrip('\r\n')

            if _SERVER_HEADER_RE.match(line):
                continue

            if line.startswith('#'):
                admin = _ADMIN_RE.match(line)
                if admin is None and not _HEADER_RE.match(line):
                    # Comment inside a query
                    if event is not None and query_lines:
                        query_lines.append(line)
                    continue
                if event is not None and (query_lines or event.admin):
                    done = self._finish(event, query_lines)
                    if done is not None:
                        yield done
                    event, query_lines = None, []
                if event is None:
                    event = Event(offset=line_offset, ts=ts)
                if admin is not None:
                    event.admin = True
                    event.query = admin.group(1)
                    continue
                self._parse_header(event, line)
                if event.ts is not None:
                    ts = event.ts
                continue

            if event is None:
                # Tail of an event that began before start_offset
                continue
            if not query_lines:
                use = _USE_RE.match(line)
                if use:
                    event.db = use.group(1)
                    continue
                if _SET_TIMESTAMP_RE.match(line):
                    continue
                if not line.strip():
                    continue
            query_lines.append(line)

        if event is not None and (query_lines or event.admin):
            done = self._finish(event, query_lines)
            if done is not None:
                yield done

    def _finish(self, event: Event, query_lines) -> Optional[Event]:
        if event.admin:
            if event.query in self.filter_admin:
                return None
            event.query = f"administrator command: {event.query}"
            return event
        query = "\n".join(query_lines).strip()
        if query.endswith(';'):
            query = query[:-1].rstrip()
        event.query = query
        return event

    def _parse_header(self, event: Event, line: str) -> None:
        body = line[1:].strip()
        if body.startswith('Time:'):
            event.ts = parse_time(body[len('Time:'):])
            return
        if body.startswith('User@Host:'):
            m = _USER_HOST_RE.search(body)
            if m:
                event.user = (m.group(2) or m.group(1)).strip()
                event.host = (m.group(3) or m.group(4)).strip()
            return
        for key, value in _METRIC_RE.findall(body):
            if key == 'Schema':
                event.db = value
            elif key == 'Log_slow_rate_type':
                event.rate_type = value
            elif key == 'Log_slow_rate_limit':
                try:
                    event.rate_limit = int(value)
                except ValueError:
                    pass
            elif key in _IGNORED_KEYS:
                continue
            elif value in ('Yes', 'No'):
                event.bool_metrics[key] = value == 'Yes'
            elif key.endswith('_time') or key.endswith('_wait'):
                try:
                    event.time_metrics[key] = float(value)
                except ValueError:
                    pass
            else:
                try:
                    event.number_metrics[key] = int(value)
                except ValueError:
                    pass
