"""
DB Agent - Database Connector Base Module

Abstract base class for MySQL connectors. Every subsystem opens its own
short-lived connection through a connector; connections are never shared.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Union

from .dsn import redact


def _sql_str(value) -> str:
    """MySQL returns booleans as 0 and 1"""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


@dataclass
class Query:
    """One configuration statement

    set is executed; if verify is given it is run afterwards and its first
    column must equal expect.
    """
    set: str
    verify: str = ""
    expect: str = ""

    @classmethod
    def from_value(cls, value: Union[str, dict, 'Query']) -> 'Query':
        if isinstance(value, Query):
            return value
        if isinstance(value, str):
            return cls(set=value)
        expect = value.get('expect', value.get('Expect'))
        return cls(set=value.get('set') or value.get('Set', ''),
                   verify=value.get('verify') or value.get('Verify', ''),
                   expect='' if expect is None else _sql_str(expect))

    def to_dict(self) -> dict:
        return {'set': self.set, 'verify': self.verify, 'expect': self.expect}


class Connector(ABC):
    """Abstract MySQL connector

    All calls block; async callers run them in an executor.
    """

    def __init__(self, dsn: str, logger=None):
        """Initialize connector

        Args:
            dsn: MySQL DSN
            logger: Logger instance
        """
        self.dsn = dsn
        self.logger = logger

    @abstractmethod
    def connect(self, tries: int = 1) -> None:
        """Open the connection

        Raises:
            MySQLError: If every try fails
        """
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def set(self, queries: List[Query]) -> None:
        """Execute queries in order, stopping at the first failure

        Raises:
            MySQLError: If a query fails or its verify value does not match
        """
        pass

    @abstractmethod
    def get_global_var(self, name: str) -> Optional[str]:
        """Value of a global variable, or None if it does not exist"""
        pass

    @abstractmethod
    def uptime(self) -> int:
        """Server uptime in seconds"""
        pass

    @abstractmethod
    def digest_rows(self) -> List[dict]:
        """All rows of performance_schema.events_statements_summary_by_digest"""
        pass

    @abstractmethod
    def digest_text(self, digest: str) -> str:
        pass

    def __str__(self) -> str:
        return redact(self.dsn)

    def __enter__(self) -> 'Connector':
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
