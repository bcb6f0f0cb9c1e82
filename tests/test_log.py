"""Tests for the log relay and the log service."""

import asyncio

import pytest

from dbagent.log import BUFFER_SIZE, Relay
from dbagent.log import Manager as LogManager
from dbagent.logger import LogChannel
from dbagent.proto import LOG_DEBUG, LOG_INFO, LOG_WARNING, Cmd, LogEntry

from fakes import FakeWebsocketClient, eventually


def entry(msg, level=LOG_INFO, offline=False):
    return LogEntry(level=level, service="qan", msg=msg, offline=offline)


class TestRelayBuffers:
    def test_two_tier_buffer(self):
        relay = Relay(None, LogChannel())
        for i in range(2 * BUFFER_SIZE + 1):
            relay.buffer(entry(str(i)))
        assert [e.msg for e in relay.first_buf] == [str(i) for i in range(BUFFER_SIZE)]
        assert [e.msg for e in relay.second_buf] == [str(2 * BUFFER_SIZE)]
        assert relay.lost == BUFFER_SIZE
        assert relay.get_status()["log-buf1"] == str(BUFFER_SIZE)

    @pytest.mark.asyncio
    async def test_resend_order(self):
        client = FakeWebsocketClient()
        relay = Relay(client, LogChannel())
        for i in range(2 * BUFFER_SIZE + 1):
            relay.buffer(entry(str(i)))
        await client.connect()
        relay.connected = True
        await relay.resend()
        msgs = [e.msg for e in client.sent]
        assert msgs[:BUFFER_SIZE] == [str(i) for i in range(BUFFER_SIZE)]
        assert msgs[BUFFER_SIZE] == f"Lost {BUFFER_SIZE} log entries"
        assert msgs[BUFFER_SIZE + 1:] == [str(2 * BUFFER_SIZE)]
        assert relay.first_buf == [] and relay.second_buf == [] and relay.lost == 0

    @pytest.mark.asyncio
    async def test_failed_send_is_buffered(self):
        client = FakeWebsocketClient()
        await client.connect()
        client.send_error = asyncio.TimeoutError()
        relay = Relay(client, LogChannel())
        relay.connected = True
        assert await relay.send(entry("x"), buffer_on_err=True) is False
        assert [e.msg for e in relay.first_buf] == ["x"]


class TestRelayFile:
    @pytest.mark.asyncio
    async def test_level_filter_and_file(self, tmp_path):
        path = tmp_path / "agent.log"
        relay = Relay(None, LogChannel(), log_file=str(path), log_level=LOG_INFO)
        relay._set_log_file(str(path))
        await relay._handle_entry(entry("kept", LOG_WARNING))
        await relay._handle_entry(entry("filtered", LOG_DEBUG))
        relay._close_file()
        text = path.read_text()
        assert "qan: warning: kept" in text
        assert "filtered" not in text

    def test_invalid_level_is_rejected(self):
        relay = Relay(None, LogChannel())
        relay._set_log_level(42)
        assert relay.log_level == LOG_INFO
        relay._set_log_level(LOG_DEBUG)
        assert relay.get_status()["log-level"] == "debug"


class TestRelayRun:
    @pytest.mark.asyncio
    async def test_forwards_entries_when_connected(self):
        chan = LogChannel()
        chan.bind()
        client = FakeWebsocketClient()
        relay = Relay(client, chan)
        task = asyncio.ensure_future(relay.run())
        try:
            await eventually(lambda: relay.connected)
            chan.put(entry("hello"))
            chan.put(entry("file only", offline=True))
            await eventually(lambda: "hello" in [e.msg for e in client.sent])
        finally:
            await relay.stop()
            await asyncio.wait_for(task, 3)
        assert "file only" not in [e.msg for e in client.sent]
        assert relay.get_status()["log-relay"] == "Stopped"
        chan.unbind()

    @pytest.mark.asyncio
    async def test_buffers_while_disconnected(self):
        chan = LogChannel()
        chan.bind()
        relay = Relay(FakeWebsocketClient(), chan, offline=False)
        relay.connected = False
        await relay._handle_entry(entry("queued"))
        assert [e.msg for e in relay.first_buf] == ["queued"]
        chan.unbind()


class TestLogManager:
    @pytest.mark.asyncio
    async def test_start_set_config_stop(self, ctx, logger):
        ctx.log_chan.bind()
        manager = LogManager(ctx, None, logger)
        reply = await manager.handle(Cmd(id=1, service="log", cmd="StartService",
                                         data={"level": "warning"}))
        assert reply.error == ""
        assert reply.data == {"level": "warning", "file": "", "offline": False}
        assert ctx.basedir.read_config("log")["level"] == "warning"

        reply = await manager.handle(Cmd(id=2, service="log", cmd="StartService"))
        assert reply.error == "log service is running"

        reply = await manager.handle(Cmd(id=3, service="log", cmd="SetConfig", data={"level": "debug"}))
        assert reply.error == ""
        assert reply.data["level"] == "debug"
        await eventually(lambda: manager.relay.log_level == LOG_DEBUG)

        reply = await manager.handle(Cmd(id=4, service="log", cmd="SetConfig", data={"level": "loud"}))
        assert "Invalid log level" in reply.error

        configs, errs = manager.get_config()
        assert configs[0]["service"] == "log" and errs == []

        reply = await manager.handle(Cmd(id=5, service="log", cmd="StopService"))
        assert reply.error == ""
        assert manager.relay is None
        ctx.log_chan.unbind()
