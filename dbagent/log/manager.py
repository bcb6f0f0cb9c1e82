"""
DB Agent - Log Manager Module

Service manager for the log relay: owns the relay task and its config
(config/log.conf).
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Tuple

from ..errors import ConfigError, ServiceIsNotRunningError, ServiceIsRunningError
from ..proto import LOG_LEVEL_NUMBER, LOG_WARNING, Cmd, Reply
from ..service import ServiceManager, agent_config
from ..status import Status
from .relay import Relay

DEFAULT_LOG_LEVEL = "info"
SET_TIMEOUT = 3


@dataclass
class Config:
    level: str = DEFAULT_LOG_LEVEL
    file: str = ""
    offline: bool = False

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> 'Config':
        d = d or {}
        config = cls(level=d.get('level') or DEFAULT_LOG_LEVEL,
                     file=d.get('file') or "",
                     offline=bool(d.get('offline', False)))
        config.validate()
        return config

    def validate(self) -> None:
        if self.level not in LOG_LEVEL_NUMBER:
            raise ConfigError(f"Invalid log level: {self.level}")

    def to_dict(self) -> dict:
        return asdict(self)


class Manager(ServiceManager):
    name = "log"

    def __init__(self, ctx, client, logger):
        """Initialize log manager

        Args:
            ctx: Agent Context (basedir, log channel)
            client: WebsocketClient for the log link
            logger: Logger instance
        """
        self.ctx = ctx
        self.client = client
        self.logger = logger
        self.config: Optional[Config] = None
        self.relay: Optional[Relay] = None
        self._task: Optional[asyncio.Task] = None
        self._status = Status(["log"])

    def load_config(self) -> Config:
        return Config.from_dict(self.ctx.basedir.read_config("log"))

    async def start(self, config: Optional[Config] = None) -> None:
        if self.relay is not None:
            raise ServiceIsRunningError("log")
        config = config or self.load_config()
        self._status.update("log", "Starting")
        self.relay = Relay(self.client, self.ctx.log_chan, config.file,
                           LOG_LEVEL_NUMBER[config.level], config.offline)
        self._task = asyncio.ensure_future(self.relay.run())
        self.config = config
        self._status.update("log", "Ready")

    async def stop(self) -> None:
        relay, task = self.relay, self._task
        self.relay, self._task = None, None
        if relay is None:
            return
        self._status.update("log", "Stopping")
        await relay.stop()
        try:
            await asyncio.wait_for(task, 3)
        except asyncio.TimeoutError:
            self.logger.offline(LOG_WARNING, "Timeout stopping log relay")
        if self.client is not None:
            await self.client.disconnect()
        self._status.update("log", "Stopped")

    async def handle(self, cmd: Cmd) -> Reply:
        self._status.update_re("log", "Handling", cmd)
        try:
            if cmd.cmd == "StartService":
                return await self._start_service(cmd)
            if cmd.cmd == "StopService":
                if self.relay is None:
                    return cmd.reply(None, ServiceIsNotRunningError("log"))
                await self.stop()
                return cmd.reply(None)
            if cmd.cmd == "SetConfig":
                return await self._set_config(cmd)
            if cmd.cmd == "GetConfig":
                return cmd.reply(self.config.to_dict() if self.config else None)
            if cmd.cmd == "Status":
                return cmd.reply(self.status())
            if cmd.cmd == "Reconnect":
                if self.client is not None:
                    await self.client.disconnect()
                return cmd.reply(None)
            return self.unknown_cmd(cmd)
        finally:
            self._status.update("log", "Ready" if self.relay else "Stopped")

    async def _start_service(self, cmd: Cmd) -> Reply:
        if self.relay is not None:
            return cmd.reply(None, ServiceIsRunningError("log"))
        try:
            config = Config.from_dict(cmd.data_dict())
            await self.start(config)
            self.ctx.basedir.write_config("log", config.to_dict())
        except (ConfigError, ValueError) as e:
            return cmd.reply(None, e)
        return cmd.reply(config.to_dict())

    async def _set_config(self, cmd: Cmd) -> Reply:
        try:
            new = Config.from_dict(cmd.data_dict())
        except (ConfigError, ValueError) as e:
            return cmd.reply(None, e)
        if self.relay is None or self.config is None:
            return cmd.reply(None, ConfigError("log service is not running"))

        errs = []
        if new.file != self.config.file:
            try:
                await asyncio.wait_for(self.relay.log_file_chan.put(new.file), SET_TIMEOUT)
                self.config.file = new.file
            except asyncio.TimeoutError:
                errs.append(RuntimeError("Timeout setting new log file"))
        if new.level != self.config.level:
            try:
                await asyncio.wait_for(
                    self.relay.log_level_chan.put(LOG_LEVEL_NUMBER[new.level]), SET_TIMEOUT)
                self.config.level = new.level
            except asyncio.TimeoutError:
                errs.append(RuntimeError("Timeout setting new log level"))

        try:
            self.ctx.basedir.write_config("log", self.config.to_dict())
        except ConfigError as e:
            errs.append(e)
        return cmd.reply(self.config.to_dict(), *errs)

    def status(self) -> Dict[str, str]:
        others = []
        if self.client is not None:
            others.append(self.client.get_status())
        if self.relay is not None:
            others.append(self.relay.get_status())
        return self._status.merge(*others)

    def get_config(self) -> Tuple[List[dict], List[str]]:
        if self.config is None:
            return [], []
        return [agent_config("log", self.config.to_dict(), self.relay is not None)], []
