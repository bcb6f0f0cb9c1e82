"""Tests for the data spool, the sender and the data service."""

import asyncio
import errno
import os
import tempfile
import socket
import urllib.error
from datetime import timedelta

import pytest

from dbagent.backoff import Backoff
from dbagent.data import Manager as DataManager
from dbagent.data import Sender, Spooler
from dbagent.data.serializer import JsonGzipSerializer, JsonSerializer, decode, is_gzip, make_serializer
from dbagent.data.stats import SenderStats, SentInfo, format_sent_report, humanize_bytes
from dbagent.errors import ConfigError, ServiceIsNotRunningError, SpoolFullError
from dbagent.proto import Cmd

from fakes import FakeClock, eventually


class FakeAPI:
    """Returns one scripted response per POST; an exception is raised"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.posted = []

    def post_data(self, body, content_encoding=None):
        self.posted.append((body, content_encoding))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response, b""


def make_spooler(logger, tmp_path, now_ns=None):
    kwargs = {"now_ns": now_ns} if now_ns else {}
    return Spooler(logger, str(tmp_path / "data"), str(tmp_path / "trash"), "db1", **kwargs)


def spool_entries(spooler, *payloads, sz=None):
    """Store entries synchronously, bypassing the writer task"""
    os.makedirs(spooler.data_dir, exist_ok=True)
    os.makedirs(spooler.trash_dir, exist_ok=True)
    sz = sz or JsonSerializer()
    keys = []
    for i, payload in enumerate(payloads, 1):
        key = str(i).zfill(20)
        spooler._store(key, sz.to_bytes(payload))
        keys.append(key)
    return keys


class TestSerializer:
    def test_make_serializer(self):
        assert isinstance(make_serializer(""), JsonSerializer)
        assert isinstance(make_serializer("gzip"), JsonGzipSerializer)
        with pytest.raises(ConfigError):
            make_serializer("bzip2")

    def test_gzip_is_deterministic_and_detected(self):
        sz = JsonGzipSerializer()
        raw = sz.to_bytes({"a": 1})
        assert raw == sz.to_bytes({"a": 1})
        assert is_gzip(raw)
        assert decode(raw) == {"a": 1}
        assert decode(JsonSerializer().to_bytes([1])) == [1]


class TestSpooler:
    @pytest.mark.asyncio
    async def test_write_stores_envelope(self, logger, tmp_path):
        spooler = make_spooler(logger, tmp_path)
        await spooler.start(JsonSerializer())
        key = spooler.write("qan", {"uuid": "m1"})
        await spooler.stop()

        assert list(spooler.files()) == [key]
        assert len(key) == 20
        envelope = decode(spooler.read(key))
        assert envelope["service"] == "qan"
        assert envelope["hostname"] == "db1"
        assert envelope["data"] == {"uuid": "m1"}
        assert envelope["created"].endswith("Z")
        assert os.listdir(spooler.trash_dir) == []

    @pytest.mark.asyncio
    async def test_keys_strictly_increase(self, logger, tmp_path):
        spooler = make_spooler(logger, tmp_path, now_ns=lambda: 5)
        await spooler.start(JsonSerializer())
        keys = [spooler.write("qan", i) for i in range(3)]
        await spooler.stop()
        assert keys == ["5".zfill(20), "6".zfill(20), "7".zfill(20)]
        assert list(spooler.files()) == keys

    def test_write_before_start(self, logger, tmp_path):
        with pytest.raises(SpoolFullError):
            make_spooler(logger, tmp_path).write("qan", {})

    @pytest.mark.asyncio
    async def test_full_write_buffer_drops(self, logger, tmp_path):
        spooler = make_spooler(logger, tmp_path)
        await spooler.start(JsonSerializer())
        for i in range(100):
            spooler.write("qan", i)
        with pytest.raises(SpoolFullError):
            spooler.write("qan", 100)
        await spooler.stop()
        assert spooler.count() == 100

    @pytest.mark.asyncio
    async def test_write_during_stop_raises(self, logger, log_chan, tmp_path):
        spooler = make_spooler(logger, tmp_path)
        await spooler.start(JsonSerializer())
        spooler.write("qan", 1)
        stopping = asyncio.ensure_future(spooler.stop())
        await asyncio.sleep(0)
        with pytest.raises(SpoolFullError):
            spooler.write("qan", 2)
        await stopping
        assert spooler.count() == 1
        assert "Spooler is not running, dropping qan data" in log_chan.messages()

    @pytest.mark.asyncio
    async def test_unwritable_directory_crashes(self, logger, log_chan, tmp_path, monkeypatch):
        def mkstemp(*args, **kwargs):
            raise PermissionError(errno.EACCES, "Permission denied")

        spooler = make_spooler(logger, tmp_path)
        await spooler.start(JsonSerializer())
        monkeypatch.setattr(tempfile, "mkstemp", mkstemp)
        spooler.write("qan", 1)
        await eventually(lambda: spooler.status.get("data-spooler") == "Crashed")
        with pytest.raises(SpoolFullError):
            spooler.write("qan", 2)
        await spooler.stop()
        assert any(m.startswith("Spool directory") and "not writable" in m for m in log_chan.messages())

    @pytest.mark.asyncio
    async def test_transient_store_error_drops_one_entry(self, logger, log_chan, tmp_path, monkeypatch):
        real_mkstemp = tempfile.mkstemp
        failures = [OSError(errno.ENOSPC, "No space left on device")]

        def mkstemp(*args, **kwargs):
            if failures:
                raise failures.pop()
            return real_mkstemp(*args, **kwargs)

        spooler = make_spooler(logger, tmp_path)
        await spooler.start(JsonSerializer())
        monkeypatch.setattr(tempfile, "mkstemp", mkstemp)
        lost = spooler.write("qan", 1)
        kept = spooler.write("qan", 2)
        await spooler.stop()
        assert list(spooler.files()) == [kept]
        assert spooler.status.get("data-spooler") == "Stopped"
        assert any(m.startswith(f"Cannot spool {lost}") for m in log_chan.messages())

    def test_files_ignores_partial_names(self, logger, tmp_path):
        spooler = make_spooler(logger, tmp_path)
        keys = spool_entries(spooler, {"a": 1})
        open(os.path.join(spooler.data_dir, ".tmp123"), "w").close()
        assert list(spooler.files()) == keys
        spooler.remove(keys[0])
        assert spooler.count() == 0


class TestSender:
    def _sender(self, logger, api, spooler):
        return Sender(logger, api, spooler, asyncio.Queue(maxsize=1),
                      backoff=Backoff(rand_func=lambda: 0.0))

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_order(self, logger, tmp_path):
        spooler = make_spooler(logger, tmp_path)
        _, b, c = spool_entries(spooler, "A", "B", "C")
        api = FakeAPI([200, 500])
        sender = self._sender(logger, api, spooler)

        info = await sender.send()
        assert info.files == 1
        assert info.api_errs == 1
        assert list(spooler.files()) == [b, c]
        assert [decode(body) for body, _ in api.posted] == ["A", "B"]

        api.posted.clear()
        api.responses = [200]
        info = await sender.send()
        assert info.files == 2
        assert [decode(body) for body, _ in api.posted] == ["B", "C"]
        assert spooler.count() == 0

    @pytest.mark.asyncio
    async def test_transport_errors(self, logger, tmp_path):
        spooler = make_spooler(logger, tmp_path)
        spool_entries(spooler, "A", "B")
        sender = self._sender(logger, FakeAPI([urllib.error.URLError("refused")]), spooler)
        info = await sender.send()
        assert (info.files, info.errs, info.timeouts) == (0, 1, 0)
        assert spooler.count() == 2

        sender.api = FakeAPI([socket.timeout("timed out")])
        info = await sender.send()
        assert (info.errs, info.timeouts) == (0, 1)
        assert "1 timeouts" in sender.get_status()["data-sender-last"]

    @pytest.mark.asyncio
    async def test_gzip_entries_sent_with_encoding(self, logger, tmp_path):
        spooler = make_spooler(logger, tmp_path)
        spool_entries(spooler, {"x": 1}, sz=JsonGzipSerializer())
        api = FakeAPI([201])
        await self._sender(logger, api, spooler).send()
        assert api.posted[0][1] == "gzip"

    @pytest.mark.asyncio
    async def test_tick_triggers_send(self, logger, tmp_path):
        spooler = make_spooler(logger, tmp_path)
        spool_entries(spooler, "A")
        api = FakeAPI([200])
        sender = self._sender(logger, api, spooler)
        sender.start()
        sender.tick_chan.put_nowait(True)
        for _ in range(200):
            if spooler.count() == 0:
                break
            await asyncio.sleep(0.01)
        await sender.stop()
        assert spooler.count() == 0
        assert sender.get_status()["data-sender"] == "Stopped"


class TestStats:
    def test_report(self):
        stats = SenderStats(timedelta(days=1))
        stats.add(SentInfo(files=2, bytes=2000, seconds=1.0, api_errs=1))
        report = stats.report()
        assert report.files == 2
        text = format_sent_report(report)
        assert text.startswith("2 files, 2.00 kB")
        assert "1 API errors" in text

    def test_humanize_bytes(self):
        assert humanize_bytes(512) == "512 B"
        assert humanize_bytes(443590) == "443.59 kB"


class TestDataManager:
    @pytest.mark.asyncio
    async def test_start_write_stop(self, ctx, logger):
        clock = FakeClock()
        manager = DataManager(ctx, FakeAPI([200]), clock, logger, hostname="db1")
        await manager.start()
        assert clock.intervals() == [63]
        key = manager.write("qan", {"uuid": "m1"})
        status = manager.status()
        assert status["data"] == "Ready"
        assert "data-spooler" in status
        await manager.stop()
        assert clock.intervals() == []
        assert list(manager.spooler.files()) == [key]
        with pytest.raises(ServiceIsNotRunningError):
            manager.write("qan", {})

    @pytest.mark.asyncio
    async def test_set_config(self, ctx, logger):
        clock = FakeClock()
        manager = DataManager(ctx, FakeAPI([200]), clock, logger, hostname="db1")
        await manager.start()
        try:
            reply = await manager.handle(Cmd(id=1, service="data", cmd="SetConfig",
                                             data={"send_interval": 10, "encoding": ""}))
            assert reply.error == ""
            assert reply.data["send_interval"] == 10
            assert reply.data["encoding"] == ""
            assert clock.intervals() == [10]
            assert ctx.basedir.read_config("data")["send_interval"] == 10

            reply = await manager.handle(Cmd(id=2, service="data", cmd="SetConfig",
                                             data={"encoding": "zip"}))
            assert "Unknown encoding" in reply.error

            reply = await manager.handle(Cmd(id=3, service="data", cmd="StartService"))
            assert reply.error == "data service is running"
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_unknown_cmd(self, ctx, logger):
        manager = DataManager(ctx, FakeAPI([200]), FakeClock(), logger, hostname="db1")
        reply = await manager.handle(Cmd(id=1, service="data", cmd="Explode"))
        assert reply.error == "Unknown command: Explode"
        reply = await manager.handle(Cmd(id=2, service="data", cmd="StopService"))
        assert reply.error == "data service is not running"
