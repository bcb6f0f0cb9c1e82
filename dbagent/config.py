"""
DB Agent - Configuration Module

Handles the agent base directory, loading and validation of agent
configuration, and the per-service JSON config files.
"""

import json
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse

from .errors import ConfigError
from .logger import LogChannel
from .status import Status

DEFAULT_BASEDIR = "/usr/local/percona/percona-agent"
BASEDIR_ENV = "PERCONA_AGENT_DIR"

CONFIG_DIR = "config"
DATA_DIR = "data"
BIN_DIR = "bin"
TRASH_DIR = "trash"
START_LOCK_FILE = "start.lock"
DEFAULT_PIDFILE = "percona-agent.pid"

LOCAL_HOSTS = ("localhost", "127.0.0.1")


class Basedir:
    """On-disk layout rooted at the agent base directory"""

    def __init__(self, path: str):
        self.path = os.path.abspath(path)

    def init(self) -> 'Basedir':
        """Create the base directory tree

        Raises:
            ConfigError: If a directory cannot be created
        """
        try:
            os.makedirs(self.path, exist_ok=True)
            for name in (CONFIG_DIR, DATA_DIR, BIN_DIR, TRASH_DIR):
                os.makedirs(self.dir(name), exist_ok=True)
            os.chmod(self.dir(CONFIG_DIR), 0o700)
        except OSError as e:
            raise ConfigError(f"Cannot initialize basedir {self.path}: {e}") from e
        return self

    def dir(self, name: str) -> str:
        return os.path.join(self.path, name)

    def config_file(self, service: str) -> str:
        return os.path.join(self.dir(CONFIG_DIR), f"{service}.conf")

    @property
    def lock_file(self) -> str:
        return os.path.join(self.path, START_LOCK_FILE)

    @property
    def default_pidfile(self) -> str:
        return os.path.join(self.path, DEFAULT_PIDFILE)

    def read_config(self, service: str) -> Optional[dict]:
        """Read a service config

        Returns:
            Parsed config, or None if the file does not exist

        Raises:
            ConfigError: If the file cannot be read or is not valid JSON
        """
        return self.read_json(self.config_file(service))

    def read_json(self, path: str) -> Any:
        if not os.path.exists(path):
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e

    def write_config(self, service: str, config: Any) -> None:
        """Write a service config as JSON, mode 0600, replacing atomically"""
        self.write_json(self.config_file(service), config)

    def write_json(self, path: str, config: Any) -> None:
        data = json.dumps(config, indent=4, sort_keys=True,
                          default=lambda o: o.to_dict())
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=f".{os.path.basename(path)}.")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(data + "\n")
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except OSError as e:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise ConfigError(f"Cannot write {path}: {e}") from e

    def remove_config(self, service: str) -> None:
        path = self.config_file(service)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


@dataclass
class Context:
    """Process-wide state created once at boot and passed to constructors"""
    basedir: Basedir
    config: dict
    log_chan: LogChannel = field(default_factory=LogChannel)
    status: Status = field(default_factory=lambda: Status(["agent", "agent-cmd-handler"]))

    @property
    def debug(self) -> bool:
        return bool(self.config.get('debug'))


def default_basedir() -> str:
    return os.environ.get(BASEDIR_ENV) or DEFAULT_BASEDIR


def load_config(basedir: Basedir) -> dict:
    """Load and validate agent configuration from config/agent.conf

    Args:
        basedir: Agent base directory

    Returns:
        dict: Configuration with all keys, defaults and links applied

    Raises:
        ConfigError: If config is missing, invalid or lacks required fields
    """
    raw = basedir.read_config("agent")
    if raw is None:
        raise ConfigError(f"Configuration file not found: {basedir.config_file('agent')}")
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid configuration in {basedir.config_file('agent')}")

    config = _apply_defaults(raw, basedir)
    _validate_config(config)
    config['links'] = derive_links(config)
    return config


def _apply_defaults(config: dict, basedir: Basedir) -> dict:
    """Apply default values for optional settings

    Args:
        config: Raw configuration from file
        basedir: Agent base directory, for the default PID file

    Returns:
        dict: Configuration with defaults applied
    """
    debug = config.get('debug', False)
    if isinstance(debug, str):
        debug = debug.lower() == 'true'
    return {
        'agent_uuid': config.get('agent_uuid', ''),
        'api_hostname': config.get('api_hostname', ''),
        'api_key': config.get('api_key', ''),
        'pidfile': config.get('pidfile', ''),
        'links': dict(config.get('links') or {}),
        'debug': bool(debug),
    }


def _validate_config(config: dict) -> None:
    """Validate required configuration

    Raises:
        ConfigError: If required fields are missing
    """
    if not config.get('agent_uuid'):
        raise ConfigError("Agent UUID is required in configuration")

    if not config.get('api_hostname'):
        raise ConfigError("API hostname is required in configuration")

    if not config.get('api_key'):
        raise ConfigError("API key is required in configuration")


def derive_links(config: dict) -> dict:
    """Fill in the cmd, log, data, ping and status URLs from api_hostname

    Explicit links in the config win. Plain ws:// and http:// are used only
    when api_hostname is an explicit plain URL.
    """
    hostname = config['api_hostname']
    parsed = urlparse(hostname if "://" in hostname else f"https://{hostname}")
    secure = parsed.scheme in ("https", "wss")
    host = parsed.netloc
    ws = "wss" if secure else "ws"
    http = "https" if secure else "http"
    uuid = config['agent_uuid']

    links = {
        'cmd': f"{ws}://{host}/agents/{uuid}/cmd",
        'log': f"{ws}://{host}/agents/{uuid}/log",
        'data': f"{http}://{host}/agents/{uuid}/data",
        'ping': f"{http}://{host}/ping",
        'status': f"{http}://{host}/agents/{uuid}/status",
    }
    links.update(config.get('links') or {})
    for url in links.values():
        validate_secure_server(url)
    return links


def validate_secure_server(server_url: str) -> str:
    """Enforce TLS for remote connections (allow plain ws/http only for localhost)

    Args:
        server_url: WebSocket or HTTP URL

    Returns:
        The server_url unchanged if valid

    Raises:
        ConfigError: If URL is missing or insecure
    """
    if not server_url:
        raise ConfigError("Server URL is required")

    parsed = urlparse(server_url)
    if parsed.scheme in ("wss", "https"):
        return server_url

    if parsed.scheme in ("ws", "http") and parsed.hostname in LOCAL_HOSTS:
        return server_url

    raise ConfigError(
        f"Insecure connection blocked: {server_url}. "
        "Use wss:// or https:// (TLS), or localhost for development.")
