"""
DB Agent - Instance Module

The system tree: the OS the agent runs on and the MySQL instances under it,
each identified by a UUID. Saved as config/system-tree.json and replaced
as a whole by UpdateSystemTree. Services look up instances by UUID; a MySQL
instance carries its DSN in properties["dsn"].
"""

import copy
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import ConfigError, InvalidSystemTreeError, StaleVersionError, UnknownInstanceError
from .proto import Cmd, Reply
from .service import ServiceManager, agent_config
from .status import Status

SYSTEM_TREE_FILE = "system-tree.json"
ROOT_TYPE = "OS"
MYSQL_TYPE = "MySQL"


@dataclass
class Instance:
    uuid: str
    name: str = ""
    type: str = ""
    properties: Dict[str, str] = field(default_factory=dict)
    subsystems: List['Instance'] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict) -> 'Instance':
        if not isinstance(d, dict):
            raise InvalidSystemTreeError(f"Instance is not an object: {str(d)[:100]}")
        uuid = d.get('uuid')
        if not uuid or not isinstance(uuid, str):
            raise InvalidSystemTreeError(f"Instance without uuid: {d.get('name', '')}")
        properties = d.get('properties') or {}
        if not isinstance(properties, dict):
            raise InvalidSystemTreeError(f"Instance {uuid}: properties is not an object")
        subsystems = d.get('subsystems') or []
        if not isinstance(subsystems, list):
            raise InvalidSystemTreeError(f"Instance {uuid}: subsystems is not a list")
        return cls(
            uuid=uuid,
            name=d.get('name') or "",
            type=d.get('type') or "",
            properties={str(k): str(v) for k, v in properties.items()},
            subsystems=[cls.from_dict(s) for s in subsystems],
        )

    def to_dict(self) -> dict:
        return {
            'uuid': self.uuid,
            'name': self.name,
            'type': self.type,
            'properties': dict(self.properties),
            'subsystems': [s.to_dict() for s in self.subsystems],
        }

    def walk(self):
        yield self
        for subsystem in self.subsystems:
            yield from subsystem.walk()


@dataclass
class SystemTree:
    version: int
    root: Instance

    @classmethod
    def from_dict(cls, d: dict) -> 'SystemTree':
        """Parse and validate a system tree

        Raises:
            InvalidSystemTreeError: If the root is not an OS, a UUID repeats
                or a field is malformed
        """
        if not isinstance(d, dict):
            raise InvalidSystemTreeError("System tree is not an object")
        version = d.get('version')
        if not isinstance(version, int) or isinstance(version, bool):
            raise InvalidSystemTreeError(f"Invalid system tree version: {version}")
        tree = cls(version=version, root=Instance.from_dict(d.get('root')))
        tree.validate()
        return tree

    def validate(self) -> None:
        if self.root.type != ROOT_TYPE:
            raise InvalidSystemTreeError(
                f"Root instance must be of type {ROOT_TYPE}, got '{self.root.type}'")
        # A cycle shows up as a repeated UUID
        seen = set()
        for instance in self.root.walk():
            if instance.uuid in seen:
                raise InvalidSystemTreeError(f"Duplicate instance UUID: {instance.uuid}")
            seen.add(instance.uuid)

    def to_dict(self) -> dict:
        return {'version': self.version, 'root': self.root.to_dict()}


class Repo:
    """Thread-safe store of the system tree"""

    def __init__(self, logger, basedir):
        self.logger = logger
        self.basedir = basedir
        self.file = os.path.join(basedir.dir("config"), SYSTEM_TREE_FILE)
        self.tree: Optional[SystemTree] = None
        self._index: Dict[str, Instance] = {}
        self._lock = threading.Lock()

    def init(self) -> None:
        """Load the saved system tree, if any

        Raises:
            ConfigError: If the file cannot be read
            InvalidSystemTreeError: If the saved tree is invalid
        """
        data = self.basedir.read_json(self.file)
        if data is None:
            self.logger.info(f"No system tree in {self.file}")
            return
        tree = SystemTree.from_dict(data)
        with self._lock:
            self._set(tree)
        self.logger.info(f"Loaded system tree version {tree.version} ({len(self._index)} instances)")

    def _set(self, tree: SystemTree) -> None:
        self.tree = tree
        self._index = {instance.uuid: instance for instance in tree.root.walk()}

    @property
    def version(self) -> int:
        with self._lock:
            return self.tree.version if self.tree else 0

    def get_tree(self) -> Optional[dict]:
        with self._lock:
            return self.tree.to_dict() if self.tree else None

    def update(self, data: dict) -> SystemTree:
        """Replace the system tree with a newer version and save it

        Raises:
            InvalidSystemTreeError: If the new tree is invalid
            StaleVersionError: If its version is not newer than the current one
            ConfigError: If it cannot be saved
        """
        tree = SystemTree.from_dict(data)
        with self._lock:
            current = self.tree.version if self.tree else 0
            if tree.version <= current:
                raise StaleVersionError(tree.version, current)
            self.basedir.write_json(self.file, tree.to_dict())
            self._set(tree)
        self.logger.info(f"Updated system tree to version {tree.version}")
        return tree

    def get(self, uuid: str) -> Instance:
        """Copy of one instance

        Raises:
            UnknownInstanceError: If no instance has the UUID
        """
        with self._lock:
            instance = self._index.get(uuid)
            if instance is None:
                raise UnknownInstanceError(uuid)
            return copy.deepcopy(instance)

    def list(self, type: str = "") -> List[Instance]:
        with self._lock:
            return [copy.deepcopy(i) for i in self._index.values() if not type or i.type == type]

    def get_mysql_dsn(self, uuid: str) -> str:
        instance = self.get(uuid)
        dsn = instance.properties.get('dsn')
        if not dsn:
            raise ConfigError(f"Instance {uuid} ({instance.name}) has no MySQL DSN")
        return dsn


class Manager(ServiceManager):
    name = "instance"

    def __init__(self, logger, repo: Repo):
        self.logger = logger
        self.repo = repo
        self.running = False
        self._status = Status(["instance"])

    async def start(self) -> None:
        if self.running:
            return
        self.repo.init()
        self.running = True
        self._status.update("instance", "Running")

    async def stop(self) -> None:
        self.running = False
        self._status.update("instance", "Stopped")

    async def handle(self, cmd: Cmd) -> Reply:
        self._status.update_re("instance", "Handling", cmd)
        try:
            if cmd.cmd == "GetSystemTree":
                return cmd.reply(self.repo.get_tree())
            if cmd.cmd == "UpdateSystemTree":
                try:
                    tree = self.repo.update(cmd.data_dict())
                except (ConfigError, InvalidSystemTreeError, StaleVersionError, ValueError) as e:
                    return cmd.reply(None, e)
                return cmd.reply(tree.to_dict())
            if cmd.cmd == "GetInfo":
                try:
                    uuid = cmd.data_dict().get('uuid', "")
                    return cmd.reply(self.repo.get(uuid).to_dict())
                except (UnknownInstanceError, ValueError) as e:
                    return cmd.reply(None, e)
            if cmd.cmd == "GetConfig":
                configs, _ = self.get_config()
                return cmd.reply(configs)
            if cmd.cmd == "Status":
                return cmd.reply(self.status())
            return self.unknown_cmd(cmd)
        finally:
            self._status.update("instance", "Running" if self.running else "Stopped")

    def status(self) -> Dict[str, str]:
        self._status.update("instance", f"version {self.repo.version}", "tree")
        return self._status.all()

    def get_config(self) -> Tuple[List[dict], List[str]]:
        if self.repo.tree is None:
            return [], []
        return [agent_config("instance", {'version': self.repo.version})], []
