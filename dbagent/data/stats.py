"""
DB Agent - Data Sender Stats Module

Sliding window of send passes, reported as totals, network utilization
(bytes over wall time) and throughput (bytes over time spent sending).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from ..proto import utcnow

BASE_REPORT_FORMAT = "%d files, %s, %s, %s net util, %s net speed"
ERROR_REPORT_FORMAT = "%d errors, %d API errors, %d timeouts, %d bad files"


@dataclass
class SentInfo:
    at: datetime = field(default_factory=utcnow)
    seconds: float = 0.0  # sending
    files: int = 0
    bytes: int = 0
    errs: int = 0
    api_errs: int = 0
    timeouts: int = 0
    bad_files: int = 0


@dataclass
class SentReport:
    begin: datetime
    end: datetime
    bytes: str = ""        # humanized, e.g. 443.59 kB
    duration: str = ""     # end - begin, humanized
    utilization: str = ""  # bytes / (end - begin), Mbps
    throughput: str = ""   # bytes / seconds sending, Mbps
    files: int = 0
    errs: int = 0
    api_errs: int = 0
    timeouts: int = 0
    bad_files: int = 0
    total_bytes: int = 0
    total_seconds: float = 0.0


def humanize_bytes(n: int) -> str:
    value = float(n)
    for unit in ("B", "kB", "MB", "GB", "TB"):
        if value < 1000 or unit == "TB":
            return f"{n} B" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1000
    return f"{n} B"


def humanize_duration(seconds: float) -> str:
    seconds = int(round(seconds))
    h, rest = divmod(seconds, 3600)
    m, s = divmod(rest, 60)
    if h:
        return f"{h}h{m}m{s}s"
    if m:
        return f"{m}m{s}s"
    return f"{s}s"


def mbps(n_bytes: int, seconds: float) -> str:
    if seconds <= 0:
        return "0.00"
    return f"{(n_bytes * 8) / seconds / 1e6:.2f}"


class SenderStats:
    """Send outcomes within the last `duration`"""

    def __init__(self, duration: timedelta, now: Optional[datetime] = None):
        self.duration = duration
        start = now or utcnow()
        self.sent: List[SentInfo] = [SentInfo(at=start)]
        self.begin = start
        self.end = start

    def add(self, info: SentInfo) -> None:
        self.end = info.at
        self.sent.append(info)
        cutoff = info.at - self.duration
        while len(self.sent) > 1 and self.sent[0].at < cutoff:
            self.sent.pop(0)
        self.begin = self.sent[0].at

    def report(self) -> SentReport:
        r = SentReport(begin=self.begin, end=self.end)
        for info in self.sent:
            r.total_bytes += info.bytes
            r.total_seconds += info.seconds
            r.files += info.files
            r.errs += info.errs
            r.api_errs += info.api_errs
            r.timeouts += info.timeouts
            r.bad_files += info.bad_files
        elapsed = (self.end - self.begin).total_seconds()
        r.bytes = humanize_bytes(r.total_bytes)
        r.duration = humanize_duration(elapsed)
        r.utilization = mbps(r.total_bytes, elapsed) + " Mbps"
        r.throughput = mbps(r.total_bytes, r.total_seconds) + " Mbps"
        return r


def format_sent_report(r: SentReport) -> str:
    report = BASE_REPORT_FORMAT % (r.files, r.bytes, r.duration, r.utilization, r.throughput)
    if r.errs + r.bad_files + r.api_errs + r.timeouts > 0:
        report += ", " + ERROR_REPORT_FORMAT % (r.errs, r.api_errs, r.timeouts, r.bad_files)
    return report
