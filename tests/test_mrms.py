"""Tests for the MySQL restart monitor."""

import pytest

from dbagent.errors import MySQLError
from dbagent.mrms import Manager as MrmsManager
from dbagent.mrms import Monitor, MysqlInstance
from dbagent.proto import Cmd

from fakes import DSN, FakeFactory, FakeMySQL


class Clock:
    def __init__(self, t=0.0):
        self.t = t

    def __call__(self):
        return self.t


class TestCheckIfRestarted:
    def test_restart_across_outage(self, logger):
        instance = MysqlInstance(logger, FakeMySQL(), last_uptime=60, last_check=0)
        assert instance.check_if_restarted(30, 120) is True
        assert (instance.last_uptime, instance.last_check) == (30, 120)

    def test_uptime_kept_pace(self, logger):
        instance = MysqlInstance(logger, FakeMySQL(), last_uptime=60, last_check=0)
        assert instance.check_if_restarted(180, 120) is False

    def test_elapsed_uses_whole_seconds(self, logger):
        instance = MysqlInstance(logger, FakeMySQL(), last_uptime=100, last_check=0.9)
        # int(1.1) - int(0.9) == 1, so 100 < 101 is a restart
        assert instance.check_if_restarted(100, 1.1) is True


class TestMonitor:
    @pytest.mark.asyncio
    async def test_add_shares_instance(self, logger):
        factory = FakeFactory({DSN: FakeMySQL(uptimes=[100])})
        monitor = Monitor(logger, factory, Clock())
        a = await monitor.add(DSN)
        b = await monitor.add(DSN)
        assert a is not b
        assert list(monitor.instances) == [DSN]
        assert len(factory.made) == 1
        assert monitor.instances[DSN].last_uptime == 100

    @pytest.mark.asyncio
    async def test_add_unreachable(self, logger):
        conn = FakeMySQL(connect_error=MySQLError("Can't connect"))
        monitor = Monitor(logger, FakeFactory({DSN: conn}), Clock())
        with pytest.raises(MySQLError):
            await monitor.add(DSN)
        assert monitor.instances == {}

    @pytest.mark.asyncio
    async def test_check_notifies_subscribers(self, logger):
        clock = Clock(0)
        monitor = Monitor(logger, FakeFactory({DSN: FakeMySQL(uptimes=[60, 30, 31])}), clock)
        chan = await monitor.add(DSN)
        everything = monitor.global_subscribe()

        clock.t = 120
        assert await monitor.check() == [DSN]
        assert chan.get_nowait() is True
        assert everything.get_nowait() == DSN

        clock.t = 121
        assert await monitor.check() == []
        assert chan.empty()

    @pytest.mark.asyncio
    async def test_full_subscriber_does_not_block(self, logger, log_chan):
        clock = Clock(0)
        monitor = Monitor(logger, FakeFactory({DSN: FakeMySQL(uptimes=[60, 1, 0])}), clock)
        chan = await monitor.add(DSN)
        clock.t = 10
        await monitor.check()
        clock.t = 20
        await monitor.check()
        assert chan.qsize() == 1
        assert any("channel full" in m for m in log_chan.messages())

    @pytest.mark.asyncio
    async def test_unreachable_during_check_is_skipped(self, logger):
        conn = FakeMySQL(uptimes=[60])
        monitor = Monitor(logger, FakeFactory({DSN: conn}), Clock())
        await monitor.add(DSN)
        conn.connect_error = MySQLError("gone")
        assert await monitor.check() == []

    @pytest.mark.asyncio
    async def test_remove_last_subscriber(self, logger):
        monitor = Monitor(logger, FakeFactory({DSN: FakeMySQL(uptimes=[5])}), Clock())
        a = await monitor.add(DSN)
        b = await monitor.add(DSN)
        await monitor.remove(DSN, a)
        assert DSN in monitor.instances
        await monitor.remove(DSN, b)
        assert monitor.instances == {}
        await monitor.remove(DSN, b)

    @pytest.mark.asyncio
    async def test_global_unsubscribe(self, logger):
        monitor = Monitor(logger, FakeFactory(), Clock())
        chan = monitor.global_subscribe()
        monitor.global_unsubscribe(chan)
        assert monitor.global_subscribers == []


class TestMrmsManager:
    @pytest.mark.asyncio
    async def test_lifecycle(self, logger):
        monitor = Monitor(logger, FakeFactory(), Clock())
        manager = MrmsManager(logger, monitor, interval=0.01)
        await manager.start()
        try:
            reply = await manager.handle(Cmd(id=1, service="mrms", cmd="Status"))
            assert reply.data["mrms"] == "Running"
            assert "mrms-monitor" in reply.data
            reply = await manager.handle(Cmd(id=2, service="mrms", cmd="GetConfig"))
            assert reply.data == {"interval": 0.01}
            reply = await manager.handle(Cmd(id=3, service="mrms", cmd="SetConfig"))
            assert reply.error == "Unknown command: SetConfig"
        finally:
            await manager.stop()
        assert manager.status()["mrms-monitor"] == "Stopped"
