"""
DB Agent - Service Manager Module

Uniform lifecycle shared by every subsystem the agent dispatches commands
to: log, data, mrms, qan and instance.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from .errors import UnknownCmdError
from .proto import Cmd, Reply


class ServiceManager(ABC):
    """Abstract subsystem manager

    start() and stop() are called by the agent at boot and shutdown;
    handle() serves one command and always returns exactly one Reply.
    """

    name = ""

    @abstractmethod
    async def start(self) -> None:
        """Load the saved config, if any, and start the subsystem

        Raises:
            AgentError: If the saved config is invalid or the start fails
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    @abstractmethod
    async def handle(self, cmd: Cmd) -> Reply:
        pass

    @abstractmethod
    def status(self) -> Dict[str, str]:
        pass

    @abstractmethod
    def get_config(self) -> Tuple[List[dict], List[str]]:
        """Current configs and any errors reading them"""
        pass

    def unknown_cmd(self, cmd: Cmd) -> Reply:
        return cmd.reply(None, UnknownCmdError(cmd.cmd))


def agent_config(service: str, config: Any, running: bool = True,
                 uuid: Optional[str] = None) -> dict:
    """One entry of a GetConfig reply"""
    entry = {'service': service, 'config': config, 'running': running}
    if uuid:
        entry['uuid'] = uuid
    return entry
