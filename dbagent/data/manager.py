"""
DB Agent - Data Manager Module

Service manager for the data spool: owns the spooler, the sender and their
config (config/data.conf).
"""

import asyncio
import os
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Tuple

from ..errors import AgentError, ConfigError, ServiceIsNotRunningError, ServiceIsRunningError
from ..proto import Cmd, Reply
from ..service import ServiceManager, agent_config
from ..status import Status
from .sender import Sender
from .serializer import make_serializer
from .spooler import Spooler

DEFAULT_ENCODING = "gzip"
DEFAULT_SEND_INTERVAL = 63


@dataclass
class Config:
    dir: str = ""
    encoding: str = DEFAULT_ENCODING
    send_interval: int = DEFAULT_SEND_INTERVAL

    @classmethod
    def from_dict(cls, d: Optional[dict], default_dir: str = "") -> 'Config':
        d = d or {}
        config = cls(dir=d.get('dir') or default_dir,
                     encoding=d.get('encoding', DEFAULT_ENCODING) or "",
                     send_interval=d.get('send_interval') or DEFAULT_SEND_INTERVAL)
        config.validate()
        return config

    def validate(self) -> None:
        make_serializer(self.encoding)
        if not isinstance(self.send_interval, int) or self.send_interval <= 0:
            raise ConfigError(f"Invalid send_interval: {self.send_interval}")

    def to_dict(self) -> dict:
        return asdict(self)


class Manager(ServiceManager):
    name = "data"

    def __init__(self, ctx, api, clock, logger, hostname: str = ""):
        """Initialize data manager

        Args:
            ctx: Agent Context
            api: APIClient used by the sender
            clock: Shared ticker Clock
            logger: Logger instance
            hostname: Hostname recorded in spooled envelopes
        """
        self.ctx = ctx
        self.api = api
        self.clock = clock
        self.logger = logger
        self.hostname = hostname or os.uname().nodename
        self.config: Optional[Config] = None
        self.spooler: Optional[Spooler] = None
        self.sender: Optional[Sender] = None
        self._tick_chan: Optional[asyncio.Queue] = None
        self._status = Status(["data"])

    def load_config(self) -> Config:
        return Config.from_dict(self.ctx.basedir.read_config("data"),
                                self.ctx.basedir.dir("data"))

    async def start(self, config: Optional[Config] = None) -> None:
        if self.config is not None:
            raise ServiceIsRunningError("data")
        config = config or self.load_config()
        self._status.update("data", "Starting")

        spooler = Spooler(self.logger.create_child("data-spooler"), config.dir,
                          self.ctx.basedir.dir("trash"), self.hostname)
        try:
            await spooler.start(make_serializer(config.encoding))
        except OSError as e:
            raise AgentError(f"Cannot start spooler in {config.dir}: {e}") from e
        self.spooler = spooler
        self.logger.info("Started spooler")

        self._start_sender(config.send_interval)
        self.logger.info("Started sender")

        self.config = config
        self._status.update("data", "Ready")

    def _start_sender(self, send_interval: int) -> None:
        self._tick_chan = asyncio.Queue(maxsize=1)
        self.clock.add(self._tick_chan, send_interval)
        self.sender = Sender(self.logger.create_child("data-sender"), self.api,
                             self.spooler, self._tick_chan)
        self.sender.start()

    async def _stop_sender(self) -> None:
        if self._tick_chan is not None:
            self.clock.remove(self._tick_chan)
            self._tick_chan = None
        if self.sender is not None:
            await self.sender.stop()
            self.sender = None

    async def stop(self) -> None:
        if self.config is None:
            return
        self._status.update("data", "Stopping")
        await self._stop_sender()
        if self.spooler is not None:
            await self.spooler.stop()
        self.config = None
        self._status.update("data", "Stopped")

    async def handle(self, cmd: Cmd) -> Reply:
        self._status.update_re("data", "Handling", cmd)
        try:
            if cmd.cmd == "GetConfig":
                return cmd.reply(self.config.to_dict() if self.config else None)
            if cmd.cmd == "SetConfig":
                return await self._set_config(cmd)
            if cmd.cmd == "Status":
                return cmd.reply(self.status())
            if cmd.cmd == "StartService":
                if self.config is not None:
                    return cmd.reply(None, ServiceIsRunningError("data"))
                try:
                    config = Config.from_dict(cmd.data_dict(), self.ctx.basedir.dir("data"))
                    await self.start(config)
                    self.ctx.basedir.write_config("data", config.to_dict())
                except (AgentError, ValueError) as e:
                    return cmd.reply(None, e)
                return cmd.reply(config.to_dict())
            if cmd.cmd == "StopService":
                if self.config is None:
                    return cmd.reply(None, ServiceIsNotRunningError("data"))
                await self.stop()
                return cmd.reply(None)
            return self.unknown_cmd(cmd)
        finally:
            self._status.update("data", "Ready" if self.config else "Stopped")

    async def _set_config(self, cmd: Cmd) -> Reply:
        if self.config is None:
            return cmd.reply(None, ServiceIsNotRunningError("data"))
        try:
            d = cmd.data_dict()
            new = Config.from_dict({**self.config.to_dict(), **d}, self.config.dir)
        except (AgentError, ValueError) as e:
            return cmd.reply(None, e)

        final = Config(**self.config.to_dict())
        errs = []

        if new.send_interval != final.send_interval:
            await self._stop_sender()
            self._start_sender(new.send_interval)
            final.send_interval = new.send_interval

        if new.encoding != final.encoding:
            sz = make_serializer(new.encoding)
            await self.spooler.stop()
            try:
                await self.spooler.start(sz)
                final.encoding = new.encoding
            except OSError as e:
                errs.append(e)

        try:
            self.ctx.basedir.write_config("data", final.to_dict())
        except ConfigError as e:
            errs.append(e)

        self.config = final
        return cmd.reply(final.to_dict(), *errs)

    def write(self, service: str, data) -> str:
        """Spool a report from another service

        Raises:
            ServiceIsNotRunningError: If the data service is stopped
            SpoolFullError: If the spool write buffer is full
        """
        if self.config is None or self.spooler is None:
            raise ServiceIsNotRunningError("data")
        return self.spooler.write(service, data)

    def status(self) -> Dict[str, str]:
        others = []
        if self.spooler is not None:
            others.append(self.spooler.get_status())
        if self.sender is not None:
            others.append(self.sender.get_status())
        return self._status.merge(*others)

    def get_config(self) -> Tuple[List[dict], List[str]]:
        if self.config is None:
            return [], []
        return [agent_config("data", self.config.to_dict())], []
