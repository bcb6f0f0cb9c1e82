"""
DB Agent - MySQL DSN Module

MySQL data source names as stored in the system tree:

    user:pass@tcp(host:port)/db
    user:pass@unix(/path/to/mysql.sock)/
    user@

and their conversion to mysql.connector connection arguments.
"""

import re
from dataclasses import dataclass
from typing import Optional

from ..errors import ConfigError

DEFAULT_PORT = 3306

_DSN_RE = re.compile(
    r'^(?:(?P<user>[^:@]*)(?::(?P<password>.*))?@)?'
    r'(?:(?P<proto>tcp|unix)\((?P<addr>[^)]*)\))?'
    r'(?:/(?P<db>[^?]*))?'
    r'(?:\?(?P<params>.*))?$'
)


@dataclass
class DSN:
    user: str = ""
    password: str = ""
    host: str = ""
    port: int = DEFAULT_PORT
    socket: str = ""
    database: str = ""

    @classmethod
    def parse(cls, dsn: str) -> 'DSN':
        """Parse a DSN string

        Raises:
            ConfigError: If the DSN is malformed
        """
        match = _DSN_RE.match(dsn or "")
        if not match or not dsn:
            raise ConfigError(f"Invalid MySQL DSN: {redact(dsn)}")
        parsed = cls(user=match.group('user') or "",
                     password=match.group('password') or "",
                     database=match.group('db') or "")
        proto, addr = match.group('proto'), match.group('addr') or ""
        if proto == 'unix':
            parsed.socket = addr
        elif proto == 'tcp':
            host, _, port = addr.rpartition(':') if ':' in addr else (addr, '', '')
            parsed.host = host or "127.0.0.1"
            if port:
                try:
                    parsed.port = int(port)
                except ValueError as e:
                    raise ConfigError(f"Invalid port in MySQL DSN: {redact(dsn)}") from e
        else:
            parsed.host = "localhost"
        return parsed

    def connect_args(self) -> dict:
        """Keyword arguments for mysql.connector.connect()"""
        args = {'user': self.user, 'password': self.password}
        if self.socket:
            args['unix_socket'] = self.socket
        else:
            args['host'] = self.host
            args['port'] = self.port
        if self.database:
            args['database'] = self.database
        return args

    def to(self) -> str:
        """Where the DSN points: socket path or host:port"""
        if self.socket:
            return self.socket
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        password = ":..." if self.password else ""
        if self.socket:
            return f"{self.user}{password}@unix({self.socket})"
        return f"{self.user}{password}@tcp({self.host}:{self.port})"


def redact(dsn: Optional[str]) -> str:
    """Hide the password in a DSN string for logs and status"""
    if not dsn:
        return ""
    return re.sub(r'^([^:@]*):[^@]*@', r'\1:...@', dsn)
