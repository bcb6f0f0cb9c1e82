"""Tests for the system tree repo and the instance service."""

import copy

import pytest

from dbagent.errors import ConfigError, InvalidSystemTreeError, StaleVersionError, UnknownInstanceError
from dbagent.instance import Manager, Repo
from dbagent.proto import Cmd

from fakes import DSN

TREE = {
    "version": 3,
    "root": {
        "uuid": "os1", "type": "OS", "name": "db-host",
        "subsystems": [
            {"uuid": "m1", "type": "MySQL", "name": "db1", "properties": {"dsn": DSN, "port": 3306}},
            {"uuid": "m2", "type": "MySQL", "name": "db2"},
        ],
    },
}


def tree(version=3, **root):
    t = copy.deepcopy(TREE)
    t["version"] = version
    t["root"].update(root)
    return t


@pytest.fixture
def repo(logger, basedir):
    return Repo(logger, basedir)


class TestRepo:
    def test_update_and_lookup(self, repo):
        repo.update(TREE)
        assert repo.version == 3
        m1 = repo.get("m1")
        assert m1.properties == {"dsn": DSN, "port": "3306"}
        assert repo.get_mysql_dsn("m1") == DSN
        assert [i.uuid for i in repo.list("MySQL")] == ["m1", "m2"]
        assert len(repo.list()) == 3

    def test_get_returns_copy(self, repo):
        repo.update(TREE)
        repo.get("m1").properties["dsn"] = "changed"
        assert repo.get_mysql_dsn("m1") == DSN

    def test_unknown_instance(self, repo):
        with pytest.raises(UnknownInstanceError):
            repo.get("m1")
        repo.update(TREE)
        with pytest.raises(UnknownInstanceError, match="Unknown instance: nope"):
            repo.get("nope")

    def test_instance_without_dsn(self, repo):
        repo.update(TREE)
        with pytest.raises(ConfigError, match="has no MySQL DSN"):
            repo.get_mysql_dsn("m2")

    def test_stale_version(self, repo):
        repo.update(TREE)
        with pytest.raises(StaleVersionError):
            repo.update(tree(version=3, name="renamed"))
        with pytest.raises(StaleVersionError):
            repo.update(tree(version=2))
        assert repo.get("os1").name == "db-host"
        repo.update(tree(version=4, name="renamed"))
        assert repo.get("os1").name == "renamed"

    @pytest.mark.parametrize("bad,error", [
        (tree(type="MySQL"), "Root instance must be of type OS"),
        (tree(subsystems=[{"uuid": "m1", "type": "MySQL"}, {"uuid": "m1", "type": "MySQL"}]),
         "Duplicate instance UUID: m1"),
        (tree(subsystems=[{"uuid": "os1", "type": "MySQL"}]), "Duplicate instance UUID: os1"),
        (tree(subsystems=[{"name": "no uuid"}]), "Instance without uuid"),
        (tree(subsystems="m1"), "subsystems is not a list"),
        (tree(version="3"), "Invalid system tree version"),
        ({"version": 1}, "Instance is not an object"),
    ])
    def test_invalid_tree(self, repo, bad, error):
        with pytest.raises(InvalidSystemTreeError, match=error):
            repo.update(bad)
        assert repo.tree is None

    def test_persisted_and_loaded(self, repo, logger, basedir):
        repo.update(TREE)
        loaded = Repo(logger, basedir)
        loaded.init()
        assert loaded.version == 3
        assert loaded.get_mysql_dsn("m1") == DSN

    def test_init_without_saved_tree(self, repo):
        repo.init()
        assert repo.tree is None
        assert repo.version == 0
        assert repo.get_tree() is None


class TestInstanceManager:
    @pytest.mark.asyncio
    async def test_commands(self, repo, logger):
        manager = Manager(logger, repo)
        await manager.start()

        reply = await manager.handle(Cmd(id=1, service="instance", cmd="GetSystemTree"))
        assert reply.data is None and reply.error == ""

        reply = await manager.handle(Cmd(id=2, service="instance", cmd="UpdateSystemTree", data=TREE))
        assert reply.error == ""
        assert reply.data["version"] == 3

        reply = await manager.handle(Cmd(id=3, service="instance", cmd="UpdateSystemTree", data=TREE))
        assert reply.error == "System tree version 3 is not newer than current version 3"

        reply = await manager.handle(Cmd(id=4, service="instance", cmd="GetInfo", data={"uuid": "m1"}))
        assert reply.data["name"] == "db1"
        reply = await manager.handle(Cmd(id=5, service="instance", cmd="GetInfo", data={"uuid": "x"}))
        assert reply.error == "Unknown instance: x"

        reply = await manager.handle(Cmd(id=6, service="instance", cmd="GetSystemTree"))
        assert reply.data["root"]["subsystems"][0]["uuid"] == "m1"

        reply = await manager.handle(Cmd(id=7, service="instance", cmd="GetConfig"))
        assert reply.data == [{"service": "instance", "config": {"version": 3}, "running": True}]

        reply = await manager.handle(Cmd(id=8, service="instance", cmd="Status"))
        assert reply.data["instance-tree"] == "version 3"

        reply = await manager.handle(Cmd(id=9, service="instance", cmd="Reboot"))
        assert reply.error == "Unknown command: Reboot"

        await manager.stop()
        assert manager.status()["instance"] == "Stopped"

    @pytest.mark.asyncio
    async def test_invalid_saved_tree_fails_start(self, repo, logger, basedir):
        basedir.write_json(repo.file, {"version": 1, "root": {"uuid": "x", "type": "MySQL"}})
        manager = Manager(logger, repo)
        with pytest.raises(InvalidSystemTreeError):
            await manager.start()
        assert not manager.running
