"""
DB Agent - Errors Module

Exceptions raised across the agent. Command handlers turn them into reply
errors; long-running loops log them.
"""


class AgentError(Exception):
    """Base class for agent errors"""
    pass


class ConfigError(AgentError):
    """Configuration error"""
    pass


class UnknownServiceError(AgentError):
    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Unknown service: {service}")


class UnknownCmdError(AgentError):
    def __init__(self, cmd: str):
        self.cmd = cmd
        super().__init__(f"Unknown command: {cmd}")


class InvalidCmdDataError(AgentError):
    def __init__(self, cmd: str, reason: str):
        self.cmd = cmd
        self.reason = reason
        super().__init__(f"Invalid {cmd} command data: {reason}")


class ServiceIsRunningError(AgentError):
    def __init__(self, service: str):
        self.service = service
        super().__init__(f"{service} service is running")


class ServiceIsNotRunningError(AgentError):
    def __init__(self, service: str):
        self.service = service
        super().__init__(f"{service} service is not running")


class CmdTimeoutError(AgentError):
    def __init__(self, cmd: str):
        self.cmd = cmd
        super().__init__(f"Timeout waiting for {cmd}")


class QueueFullError(AgentError):
    def __init__(self, cmd: str, name: str, size: int):
        self.cmd = cmd
        self.name = name
        self.size = size
        super().__init__(
            f"Cannot handle {cmd} command because the {name} queue is full (size: {size} messages)")


class CmdRejectedError(AgentError):
    def __init__(self, cmd: str, reason: str):
        self.cmd = cmd
        self.reason = reason
        super().__init__(f"{cmd} command rejected because {reason}")


class SpoolFullError(AgentError):
    def __init__(self):
        super().__init__("Spool write buffer is full")


class UnknownInstanceError(AgentError):
    def __init__(self, uuid: str):
        self.uuid = uuid
        super().__init__(f"Unknown instance: {uuid}")


class InvalidSystemTreeError(AgentError):
    """System tree is malformed: bad root, duplicate UUID, bad field"""
    pass


class StaleVersionError(AgentError):
    def __init__(self, version: int, current: int):
        self.version = version
        self.current = current
        super().__init__(
            f"System tree version {version} is not newer than current version {current}")


class MySQLError(AgentError):
    """MySQL connect or query failure"""
    pass


class PidFileError(AgentError):
    pass


class NotConnectedError(AgentError):
    def __init__(self, url: str = ""):
        super().__init__(f"Not connected to {url}" if url else "Not connected")
