"""
DB Agent - PID File Module

Exclusive PID file inside the agent base directory. A new PID file is
secured before the old one is given up.
"""

import os
import threading

import psutil

from .errors import PidFileError


class PidFile:
    def __init__(self, basedir: str):
        self.basedir = os.path.abspath(basedir)
        self.name = ""
        self._lock = threading.Lock()

    def get(self) -> str:
        with self._lock:
            return self.name

    def set(self, pidfile: str) -> None:
        """Create pidfile, then remove the previous one; "" only removes

        Relative paths are relative to the base directory. A PID file left by
        a process that is no longer running is replaced.

        Raises:
            PidFileError: If the path is outside the base directory, another
                running process holds the file, or it cannot be written
        """
        with self._lock:
            if not pidfile:
                self._remove()
                return

            if not os.path.isabs(pidfile):
                pidfile = os.path.join(self.basedir, pidfile)
            pidfile = os.path.abspath(pidfile)
            if os.path.commonpath([self.basedir, pidfile]) != self.basedir:
                raise PidFileError(f"PID file {pidfile} must be inside basedir {self.basedir}")

            if pidfile == self.name:
                return

            self._remove_stale(pidfile)
            try:
                fd = os.open(pidfile, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                raise PidFileError(f"PID file {pidfile} exists, another agent is running") from None
            except OSError as e:
                raise PidFileError(f"Cannot create PID file {pidfile}: {e}") from e
            with os.fdopen(fd, 'w') as f:
                f.write(f"{os.getpid()}\n")

            self._remove()
            self.name = pidfile

    def remove(self) -> None:
        with self._lock:
            self._remove()

    def _remove(self) -> None:
        if not self.name:
            return
        try:
            os.remove(self.name)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PidFileError(f"Cannot remove PID file {self.name}: {e}") from e
        self.name = ""

    @staticmethod
    def _remove_stale(pidfile: str) -> None:
        try:
            with open(pidfile, 'r') as f:
                content = f.read().strip()
        except FileNotFoundError:
            return
        except OSError as e:
            raise PidFileError(f"Cannot read PID file {pidfile}: {e}") from e
        try:
            pid = int(content)
        except ValueError:
            pid = 0
        if pid > 0 and psutil.pid_exists(pid):
            return
        try:
            os.remove(pidfile)
        except FileNotFoundError:
            pass
