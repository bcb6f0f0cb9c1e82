"""
DB Agent - Database Module

Factory for creating MySQL connectors. Subsystems take a factory instead of
a connection so each can open its own, and tests can substitute fakes.
"""

from .base import Connector, Query
from .dsn import DSN, redact
from .mysql import MySQLConnector


class ConnectionFactory:
    """Makes one connector per call"""

    def __init__(self, logger=None):
        self.logger = logger

    def make(self, dsn: str) -> Connector:
        """Create a MySQL connector for dsn (not yet connected)

        Args:
            dsn: MySQL DSN

        Returns:
            Connector: MySQLConnector
        """
        logger = self.logger.create_child("mysql") if self.logger else None
        return MySQLConnector(dsn, logger)


__all__ = ['ConnectionFactory', 'Connector', 'DSN', 'MySQLConnector', 'Query', 'redact']
