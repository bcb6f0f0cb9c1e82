"""Tests for the QAN service manager."""

import asyncio

import pytest

from dbagent.errors import MySQLError
from dbagent.instance import Repo
from dbagent.mrms import Monitor
from dbagent.proto import Cmd
from dbagent.qan import Config, FileIntervalIter, Manager, PerfSchemaIntervalIter, PerfSchemaWorker, SlowLogWorker

from fakes import DSN, FakeClock, FakeFactory, FakeMySQL, FakeSpool, eventually

TREE = {
    "version": 1,
    "root": {
        "uuid": "os1", "type": "OS", "name": "db-host",
        "subsystems": [
            {"uuid": "m1", "type": "MySQL", "name": "db1", "properties": {"dsn": DSN}},
            {"uuid": "m2", "type": "MySQL", "name": "db2"},
        ],
    },
}

QAN_CONFIG = {
    "uuid": "m1",
    "start": ["SET GLOBAL slow_query_log=ON"],
    "stop": ["SET GLOBAL slow_query_log=OFF"],
    "interval": 60,
}


class FakeAnalyzer:
    def __init__(self, config, conn, tick_chan, restart_chan):
        self.config = config
        self.conn = conn
        self.tick_chan = tick_chan
        self.restart_chan = restart_chan
        self.running = False

    def start(self):
        self.running = True

    async def stop(self):
        self.running = False

    def status(self):
        return {f"qan-analyzer-{self.config.uuid}": "Idle" if self.running else "Stopped"}


class QanFixture:
    def __init__(self, ctx, logger, uptimes=(100,)):
        self.ctx = ctx
        self.repo = Repo(logger, ctx.basedir)
        self.repo.update(TREE)
        self.mysql = FakeMySQL(uptimes=list(uptimes))
        self.monitor = Monitor(logger, FakeFactory({DSN: self.mysql}), now_func=lambda: 0.0)
        self.clock = FakeClock()
        self.analyzers = []
        self.manager = Manager(ctx, logger, self.clock, FakeSpool(), self.monitor, FakeFactory(),
                               self.repo, analyzer_factory=self.make_analyzer)

    def make_analyzer(self, *args):
        analyzer = FakeAnalyzer(*args)
        self.analyzers.append(analyzer)
        return analyzer


@pytest.fixture
def qan(ctx, logger):
    return QanFixture(ctx, logger)


def start_cmd(config=None):
    return Cmd(id=1, service="qan", cmd="StartService", data=config or QAN_CONFIG)


class TestQanManager:
    @pytest.mark.asyncio
    async def test_start_service(self, qan, ctx):
        await qan.manager.start()
        try:
            reply = await qan.manager.handle(start_cmd())
            assert reply.error == ""
            assert qan.analyzers[0].running
            assert qan.clock.intervals() == [60]
            assert list(qan.monitor.instances) == [DSN]
            saved = ctx.basedir.read_config("qan-m1")
            assert saved["uuid"] == "m1"
            assert saved["start"][0]["set"] == "SET GLOBAL slow_query_log=ON"

            reply = await qan.manager.handle(start_cmd())
            assert reply.error == "qan-m1 service is running"
        finally:
            await qan.manager.stop()
        assert not qan.analyzers[0].running
        assert qan.monitor.instances == {}
        assert qan.monitor.global_subscribers == []
        assert qan.clock.intervals() == []
        # Saved configs survive a shutdown
        assert ctx.basedir.read_config("qan-m1") is not None

    @pytest.mark.asyncio
    async def test_start_unknown_or_dsn_less_instance(self, qan):
        reply = await qan.manager.handle(start_cmd({**QAN_CONFIG, "uuid": "m9"}))
        assert reply.error == "Unknown instance: m9"
        reply = await qan.manager.handle(start_cmd({**QAN_CONFIG, "uuid": "m2"}))
        assert "has no MySQL DSN" in reply.error
        assert qan.analyzers == []

    @pytest.mark.asyncio
    async def test_start_invalid_config(self, qan):
        reply = await qan.manager.handle(start_cmd({"uuid": "m1", "interval": 60}))
        assert reply.error == "QAN config start queries are empty"

    @pytest.mark.asyncio
    async def test_start_mysql_unreachable(self, ctx, logger):
        qan = QanFixture(ctx, logger)
        qan.mysql.connect_error = MySQLError("Can't connect")
        reply = await qan.manager.handle(start_cmd())
        assert reply.error == "Can't connect"
        assert qan.analyzers == []

    @pytest.mark.asyncio
    async def test_stop_service(self, qan, ctx):
        await qan.manager.start()
        try:
            await qan.manager.handle(start_cmd())
            reply = await qan.manager.handle(Cmd(id=2, service="qan", cmd="StopService", data={"uuid": "m1"}))
            assert reply.error == ""
            assert not qan.analyzers[0].running
            assert ctx.basedir.read_config("qan-m1") is None
            assert qan.monitor.instances == {}

            reply = await qan.manager.handle(Cmd(id=3, service="qan", cmd="StopService", data={"uuid": "m1"}))
            assert reply.error == "qan-m1 service is not running"
            reply = await qan.manager.handle(Cmd(id=4, service="qan", cmd="StopService"))
            assert reply.error == "Invalid StopService command data: missing uuid"
        finally:
            await qan.manager.stop()

    @pytest.mark.asyncio
    async def test_saved_configs_started_at_boot(self, qan, ctx):
        ctx.basedir.write_config("qan-m1", QAN_CONFIG)
        ctx.basedir.write_config("qan-m2", {**QAN_CONFIG, "uuid": "m2"})
        await qan.manager.start()
        try:
            assert [a.config.uuid for a in qan.analyzers] == ["m1"]
            assert qan.manager.status()["qan"] == "Running"
            assert qan.manager.status()["qan-analyzer-m1"] == "Idle"
        finally:
            await qan.manager.stop()

    @pytest.mark.asyncio
    async def test_restart_routed_to_analyzer(self, ctx, logger):
        qan = QanFixture(ctx, logger, uptimes=[100, 1])
        await qan.manager.start()
        try:
            await qan.manager.handle(start_cmd())
            analyzer = qan.analyzers[0]
            assert await qan.monitor.check() == [DSN]
            await eventually(lambda: not analyzer.restart_chan.empty())
            assert analyzer.restart_chan.get_nowait() is True
            assert qan.manager.analyzers["m1"].watch_chan.empty()
        finally:
            await qan.manager.stop()

    @pytest.mark.asyncio
    async def test_get_config(self, qan):
        await qan.manager.start()
        try:
            await qan.manager.handle(start_cmd())
            reply = await qan.manager.handle(Cmd(id=5, service="qan", cmd="GetConfig"))
            [entry] = reply.data
            assert (entry["service"], entry["uuid"], entry["running"]) == ("qan", "m1", True)
            assert entry["config"]["interval"] == 60
            reply = await qan.manager.handle(Cmd(id=6, service="qan", cmd="SetConfig"))
            assert reply.error == "Unknown command: SetConfig"
        finally:
            await qan.manager.stop()


class TestMakeAnalyzer:
    def make(self, ctx, logger, collect_from):
        manager = Manager(ctx, logger, FakeClock(), FakeSpool(), Monitor(logger, FakeFactory()),
                          FakeFactory(), Repo(logger, ctx.basedir))
        config = Config.from_dict({**QAN_CONFIG, "collect_from": collect_from})
        return manager.make_analyzer(config, FakeMySQL(), asyncio.Queue(maxsize=1), asyncio.Queue(maxsize=1))

    def test_slowlog(self, ctx, logger):
        analyzer = self.make(ctx, logger, "slowlog")
        assert isinstance(analyzer.iter, FileIntervalIter)
        assert isinstance(analyzer.worker, SlowLogWorker)
        assert analyzer.name == "qan-m1"
        assert analyzer.worker.conn is not analyzer.conn

    def test_perfschema(self, ctx, logger):
        analyzer = self.make(ctx, logger, "perfschema")
        assert isinstance(analyzer.iter, PerfSchemaIntervalIter)
        assert isinstance(analyzer.worker, PerfSchemaWorker)
        assert analyzer.worker.name == "qan-m1-worker"
