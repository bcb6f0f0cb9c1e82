"""
DB Agent - MRMS Manager Module

Service manager for the MySQL restart monitor. The monitor always runs;
other services add and remove the instances it watches.
"""

from typing import Dict, List, Tuple

from ..proto import Cmd, Reply
from ..service import ServiceManager
from ..status import Status
from .monitor import DEFAULT_INTERVAL, Monitor


class Manager(ServiceManager):
    name = "mrms"

    def __init__(self, logger, monitor: Monitor, interval: float = DEFAULT_INTERVAL):
        self.logger = logger
        self.monitor = monitor
        self.interval = interval
        self.running = False
        self._status = Status(["mrms"])

    async def start(self) -> None:
        if self.running:
            return
        self.monitor.start(self.interval)
        self.running = True
        self._status.update("mrms", "Running")
        self.logger.info("Started")

    async def stop(self) -> None:
        if not self.running:
            return
        await self.monitor.stop()
        self.running = False
        self._status.update("mrms", "Stopped")

    async def handle(self, cmd: Cmd) -> Reply:
        if cmd.cmd == "Status":
            return cmd.reply(self.status())
        if cmd.cmd == "GetConfig":
            return cmd.reply({'interval': self.interval})
        return self.unknown_cmd(cmd)

    def status(self) -> Dict[str, str]:
        watched = {f"mrms-{dsn_index}": str(instance.conn)
                   for dsn_index, instance in enumerate(self.monitor.instances.values())}
        return self._status.merge(self.monitor.get_status(), watched)

    def get_config(self) -> Tuple[List[dict], List[str]]:
        return [], []
