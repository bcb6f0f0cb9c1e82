"""
DB Agent - Protocol Module

Wire types exchanged with the management service: commands, replies,
service payloads and log entries. Everything here round-trips through plain
JSON dicts.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# Log levels use syslog numbering: lower is more severe.
LOG_CRITICAL = 2
LOG_ERROR = 3
LOG_WARNING = 4
LOG_INFO = 6
LOG_DEBUG = 7

LOG_LEVEL_NAME = {
    LOG_CRITICAL: "critical",
    LOG_ERROR: "error",
    LOG_WARNING: "warning",
    LOG_INFO: "info",
    LOG_DEBUG: "debug",
}

LOG_LEVEL_NUMBER = {name: number for number, name in LOG_LEVEL_NAME.items()}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class Reply:
    """Result of a command, correlated by command id

    Only one of data and error is ever set.
    """
    id: int
    data: Any = None
    error: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "data": self.data, "error": self.error}

    @classmethod
    def from_dict(cls, d: dict) -> "Reply":
        return cls(id=d.get("id", 0), data=d.get("data"), error=d.get("error") or "")


@dataclass
class Cmd:
    """One remote instruction from the management service"""
    id: int = 0
    ts: Optional[datetime] = None
    user: str = ""
    agent_uuid: str = ""
    service: str = ""
    cmd: str = ""
    data: Any = None

    def reply(self, data: Any = None, *errors: Optional[BaseException]) -> Reply:
        """Make the one reply for this command

        Args:
            data: Success payload, dropped if any error is given
            errors: Zero or more errors; None entries are ignored

        Returns:
            Reply correlated to this command
        """
        errs = [str(e) for e in errors if e is not None]
        if errs:
            return Reply(id=self.id, data=None, error="\n".join(errs))
        return Reply(id=self.id, data=data, error="")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ts": format_ts(self.ts),
            "user": self.user,
            "agent_uuid": self.agent_uuid,
            "service": self.service,
            "cmd": self.cmd,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Cmd":
        return cls(
            id=d.get("id", 0),
            ts=parse_ts(d.get("ts")),
            user=d.get("user", ""),
            agent_uuid=d.get("agent_uuid", ""),
            service=d.get("service", ""),
            cmd=d.get("cmd", ""),
            data=d.get("data"),
        )

    def data_dict(self) -> dict:
        """Return the payload as a dict, decoding a JSON string payload"""
        data = self.data
        if data is None or data == "":
            return {}
        if isinstance(data, (bytes, str)):
            data = json.loads(data)
        if not isinstance(data, dict):
            raise ValueError(f"{self.cmd} data is not an object")
        return data

    def __str__(self) -> str:
        return f"Cmd[Service:{self.service} Cmd:{self.cmd} Id:{self.id} User:{self.user}]"


@dataclass
class ServiceData:
    """Payload of agent StartService/StopService commands"""
    name: str
    config: dict = field(default_factory=dict)

    @classmethod
    def from_cmd(cls, cmd: Cmd) -> "ServiceData":
        d = cmd.data_dict()
        name = d.get("name") or d.get("Name")
        if not name:
            raise ValueError("missing service name")
        config = d.get("config", d.get("Config")) or {}
        if isinstance(config, (bytes, str)):
            config = json.loads(config)
        return cls(name=name, config=config)


@dataclass
class LogEntry:
    level: int
    service: str
    msg: str
    ts: datetime = field(default_factory=utcnow)
    cmd_id: int = 0
    offline: bool = False

    @property
    def level_name(self) -> str:
        return LOG_LEVEL_NAME.get(self.level, str(self.level))

    def to_dict(self) -> dict:
        return {
            "ts": format_ts(self.ts),
            "level": self.level,
            "service": self.service,
            "msg": self.msg,
            "cmd_id": self.cmd_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "LogEntry":
        return cls(
            level=d.get("level", LOG_INFO),
            service=d.get("service", ""),
            msg=d.get("msg", ""),
            ts=parse_ts(d.get("ts")) or utcnow(),
            cmd_id=d.get("cmd_id", 0),
        )


class AgentJSONEncoder(json.JSONEncoder):
    """JSON encoder for values produced by MySQL and the agent

    Handles Decimal, datetime, bytes and dataclass-like objects with to_dict().
    """

    def default(self, obj: Any) -> Any:
        if hasattr(obj, 'to_dict'):
            return obj.to_dict()
        if hasattr(obj, 'to_eng_string'):  # Decimal
            return float(obj)
        if isinstance(obj, datetime):
            return format_ts(obj)
        if hasattr(obj, 'isoformat'):
            return obj.isoformat()
        if isinstance(obj, bytes):
            return obj.decode('utf-8', errors='replace')
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        return super().default(obj)
