"""
DB Agent - Status Module

Per-component status map: short human strings keyed by service and field.
Every service has its own reader/writer lock so a busy writer only delays
readers of the same service.
"""

import threading
from typing import Dict, Iterable, Optional


class RWLock:
    """Many readers or one writer"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class Status:
    """Status registry for a fixed set of services

    Updates for services that were not registered are ignored, so a
    component can only report on what it owns.
    """

    def __init__(self, services: Iterable[str]):
        """Initialize status registry

        Args:
            services: Service names this registry reports on
        """
        self._status: Dict[str, Dict[str, str]] = {}
        self._locks: Dict[str, RWLock] = {}
        for service in services:
            self._status[service] = {"": ""}
            self._locks[service] = RWLock()

    def update(self, service: str, value: str, field: str = "") -> None:
        lock = self._locks.get(service)
        if lock is None:
            return
        lock.acquire_write()
        try:
            self._status[service][field] = value
        finally:
            lock.release_write()

    def update_re(self, service: str, value: str, cmd, field: str = "") -> None:
        """Update status, noting the command being handled"""
        self.update(service, f"{value} [{cmd}]", field)

    def get(self, service: str, field: str = "") -> str:
        lock = self._locks.get(service)
        if lock is None:
            return ""
        lock.acquire_read()
        try:
            return self._status[service].get(field, "")
        finally:
            lock.release_read()

    def all(self) -> Dict[str, str]:
        """Snapshot every service, flattened to service or service-field names"""
        snapshot = {}
        for service, lock in self._locks.items():
            lock.acquire_read()
            try:
                for field, value in self._status[service].items():
                    snapshot[self.name(service, field)] = value
            finally:
                lock.release_read()
        return snapshot

    def merge(self, *others: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged = self.all()
        for other in others:
            if other:
                merged.update(other)
        return merged

    @staticmethod
    def name(service: str, field: str) -> str:
        return f"{service}-{field}" if field else service
