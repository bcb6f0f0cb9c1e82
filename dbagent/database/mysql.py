"""
DB Agent - MySQL Connector Module

mysql-connector-python implementation of the connector used by the
restart detector and the QAN analyzer.
"""

import time
from typing import List, Optional

import mysql.connector

from ..errors import MySQLError
from .base import Connector, Query
from .dsn import DSN

CONNECT_TIMEOUT = 5

DIGEST_COLUMNS = (
    "SCHEMA_NAME", "DIGEST", "COUNT_STAR",
    "SUM_TIMER_WAIT", "MIN_TIMER_WAIT", "AVG_TIMER_WAIT", "MAX_TIMER_WAIT",
    "SUM_LOCK_TIME", "SUM_ROWS_AFFECTED", "SUM_ROWS_SENT", "SUM_ROWS_EXAMINED",
    "SUM_CREATED_TMP_DISK_TABLES", "SUM_CREATED_TMP_TABLES",
    "SUM_SELECT_FULL_JOIN", "SUM_SELECT_SCAN", "SUM_SORT_MERGE_PASSES",
    "FIRST_SEEN", "LAST_SEEN",
)

DIGEST_QUERY = (
    "SELECT " + ", ".join(DIGEST_COLUMNS) +
    " FROM performance_schema.events_statements_summary_by_digest"
)


class MySQLConnector(Connector):
    """MySQL/MariaDB connector"""

    def __init__(self, dsn: str, logger=None, connect_timeout: int = CONNECT_TIMEOUT):
        """Initialize MySQL connector

        Args:
            dsn: MySQL DSN, user:pass@tcp(host:port)/ or user:pass@unix(path)/
            logger: Logger instance
            connect_timeout: Connect timeout in seconds
        """
        super().__init__(dsn, logger)
        self.connect_timeout = connect_timeout
        self.conn = None

    def connect(self, tries: int = 1) -> None:
        """Establish MySQL connection

        Raises:
            MySQLError: If every try fails
        """
        if self.conn is not None:
            self.close()

        args = DSN.parse(self.dsn).connect_args()
        last_error = None
        for attempt in range(max(tries, 1)):
            if attempt:
                time.sleep(1)
            try:
                if self.logger:
                    self.logger.debug(f"Connecting to {DSN.parse(self.dsn)}")
                self.conn = mysql.connector.connect(connect_timeout=self.connect_timeout, **args)
                return
            except mysql.connector.Error as e:
                last_error = MySQLError(f"MySQL connection error: {e.msg} (Error {e.errno})")
            except OSError as e:
                last_error = MySQLError(f"MySQL connection error: {type(e).__name__}: {e}")
        raise last_error

    def close(self) -> None:
        conn, self.conn = self.conn, None
        if conn is None:
            return
        try:
            conn.close()
        except mysql.connector.Error as e:
            if self.logger:
                self.logger.debug(f"Error closing MySQL connection: {e}")

    def _cursor(self, dictionary: bool = False):
        if self.conn is None:
            raise MySQLError("Not connected")
        return self.conn.cursor(dictionary=dictionary)

    def set(self, queries: List[Query]) -> None:
        cursor = self._cursor()
        try:
            for query in queries:
                query = Query.from_value(query)
                try:
                    cursor.execute(query.set)
                    if cursor.with_rows:
                        cursor.fetchall()
                except mysql.connector.Error as e:
                    raise MySQLError(f"Query failed: {query.set}: {e.msg} (Error {e.errno})") from e
                if not query.verify:
                    continue
                try:
                    cursor.execute(query.verify)
                    row = cursor.fetchone()
                except mysql.connector.Error as e:
                    raise MySQLError(f"Verify failed: {query.verify}: {e.msg} (Error {e.errno})") from e
                got = _to_str(row[0]) if row else ""
                if got != query.expect:
                    raise MySQLError(f"{query.verify} returned {got}, expected {query.expect}")
        finally:
            cursor.close()

    def get_global_var(self, name: str) -> Optional[str]:
        cursor = self._cursor()
        try:
            cursor.execute(f"SELECT @@GLOBAL.{name}")
            row = cursor.fetchone()
        except mysql.connector.Error as e:
            if self.logger:
                self.logger.debug(f"Cannot read @@GLOBAL.{name}: {e.msg}")
            return None
        finally:
            cursor.close()
        if not row or row[0] is None:
            return None
        return _to_str(row[0])

    def uptime(self) -> int:
        cursor = self._cursor()
        try:
            cursor.execute("SHOW GLOBAL STATUS LIKE 'Uptime'")
            row = cursor.fetchone()
        except mysql.connector.Error as e:
            raise MySQLError(f"Cannot read uptime: {e.msg} (Error {e.errno})") from e
        finally:
            cursor.close()
        if not row:
            raise MySQLError("Cannot read uptime: no Uptime status variable")
        return int(_to_str(row[1]))

    def digest_rows(self) -> List[dict]:
        cursor = self._cursor(dictionary=True)
        try:
            cursor.execute(DIGEST_QUERY)
            rows = cursor.fetchall()
        except mysql.connector.Error as e:
            raise MySQLError(f"Cannot read statement digests: {e.msg} (Error {e.errno})") from e
        finally:
            cursor.close()
        return [{k.lower(): v for k, v in row.items()} for row in rows]

    def digest_text(self, digest: str) -> str:
        cursor = self._cursor()
        try:
            cursor.execute(
                "SELECT DIGEST_TEXT FROM performance_schema.events_statements_summary_by_digest"
                " WHERE DIGEST = %s LIMIT 1", (digest,))
            row = cursor.fetchone()
        except mysql.connector.Error as e:
            raise MySQLError(f"Cannot read digest text: {e.msg} (Error {e.errno})") from e
        finally:
            cursor.close()
        return _to_str(row[0]) if row and row[0] is not None else ""


def _to_str(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode('utf-8', errors='replace')
    return str(value)
