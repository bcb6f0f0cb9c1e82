"""
DB Agent - Logger Module

Centralized logging utilities for the agent. Components log through a
Logger which turns each message into a LogEntry on the shared log channel;
the log relay reads the channel and ships entries to the API and log file.
"""

import asyncio
import sys
import threading
from typing import Optional

from .proto import (LOG_CRITICAL, LOG_DEBUG, LOG_ERROR, LOG_INFO, LOG_WARNING,
                    LogEntry)

DEFAULT_LOG_CHAN_SIZE = 1000

_CONSOLE_LEVEL = {
    LOG_DEBUG: "DEBUG",
    LOG_INFO: "INFO",
    LOG_WARNING: "WARN",
    LOG_ERROR: "ERROR",
    LOG_CRITICAL: "CRITICAL",
}


def format_console(entry: LogEntry) -> str:
    """Format an entry the way the agent prints to its console"""
    timestamp = entry.ts.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    level = _CONSOLE_LEVEL.get(entry.level, str(entry.level))
    return f"[{timestamp}] [{entry.service}] {level}: {entry.msg}"


class LogChannel:
    """Bounded queue of log entries shared by every Logger

    Entries can be put from the event loop or from executor threads. A full
    channel drops the entry and counts it.
    """

    def __init__(self, size: int = DEFAULT_LOG_CHAN_SIZE):
        self.size = size
        self.queue: Optional[asyncio.Queue] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.dropped = 0
        self._lock = threading.Lock()

    def bind(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> asyncio.Queue:
        """Attach the channel to a running loop; call from inside that loop"""
        self.loop = loop or asyncio.get_running_loop()
        self.queue = asyncio.Queue(maxsize=self.size)
        return self.queue

    def unbind(self) -> None:
        self.loop = None
        self.queue = None

    @property
    def bound(self) -> bool:
        return self.queue is not None and self.loop is not None and not self.loop.is_closed()

    def put(self, entry: LogEntry) -> bool:
        if not self.bound:
            return False
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self._put(entry)
        else:
            try:
                self.loop.call_soon_threadsafe(self._put, entry)
            except RuntimeError:
                # Loop closed between the check and the call
                return False
        return True

    def _put(self, entry: LogEntry) -> None:
        queue = self.queue
        if queue is None:
            return
        try:
            queue.put_nowait(entry)
        except asyncio.QueueFull:
            with self._lock:
                self.dropped += 1

    def __len__(self) -> int:
        return self.queue.qsize() if self.queue is not None else 0


class Logger:
    """Logger for one agent component

    Provides consistent logging across all modules. When the log channel is
    bound every entry goes to the log relay, which applies the configured
    level. Otherwise entries are printed to the console and debug messages
    are suppressed unless debug mode is enabled.
    """

    def __init__(self, log_chan: Optional[LogChannel] = None, service: str = "agent",
                 debug: bool = False, cmd_id: int = 0):
        """Initialize logger

        Args:
            log_chan: Shared log channel, or None to print only
            service: Service name attached to every entry
            debug: Enable debug logging on the console
            cmd_id: Command id to correlate entries with
        """
        self.log_chan = log_chan
        self.service = service
        self.debug_enabled = debug
        self.cmd_id = cmd_id

    def _log(self, level: int, message: str, always: bool = False, offline: bool = False) -> None:
        """Internal log method

        Args:
            level: Log level (LOG_DEBUG ... LOG_CRITICAL)
            message: Log message
            always: If True, also print to the console while the channel is bound
            offline: If True, the relay does not forward the entry to the API
        """
        entry = LogEntry(level=level, service=self.service, msg=message,
                         cmd_id=self.cmd_id, offline=offline)
        sent = self.log_chan.put(entry) if self.log_chan is not None else False
        if sent and not always:
            return
        if level == LOG_DEBUG and not self.debug_enabled:
            return
        print(format_console(entry), flush=True)

    def debug(self, message: str) -> None:
        """Debug message (console only if debug enabled)"""
        self._log(LOG_DEBUG, message)

    def info(self, message: str, always: bool = False) -> None:
        """Info message

        Args:
            message: Log message
            always: If True, also print to the console
        """
        self._log(LOG_INFO, message, always)

    def warn(self, message: str) -> None:
        self._log(LOG_WARNING, message)

    def error(self, message: str) -> None:
        self._log(LOG_ERROR, message)

    def critical(self, message: str) -> None:
        """Critical message, also printed to the console"""
        self._log(LOG_CRITICAL, message, always=True)

    def offline(self, level: int, message: str) -> None:
        """Log to the file only, never to the API"""
        self._log(level, message, offline=True)

    def create_child(self, service: str) -> 'Logger':
        """Create child logger with different service name

        Args:
            service: Service name for child logger

        Returns:
            New Logger on the same channel with the same debug setting
        """
        return Logger(self.log_chan, service, self.debug_enabled)

    def for_cmd(self, cmd) -> 'Logger':
        """Logger whose entries carry the command's id"""
        return Logger(self.log_chan, self.service, self.debug_enabled, cmd_id=cmd.id)


def setup_logger(log_chan: Optional[LogChannel] = None, debug: bool = False,
                 service: str = "agent") -> Logger:
    """Setup and return root logger

    Args:
        log_chan: Shared log channel
        debug: Enable debug logging
        service: Service name for log prefix

    Returns:
        Configured Logger instance
    """
    return Logger(log_chan, service, debug)


def console(message: str) -> None:
    """Print a CLI message without the log prefix"""
    print(message, file=sys.stdout, flush=True)
