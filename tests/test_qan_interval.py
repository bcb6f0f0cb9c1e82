"""Tests for QAN interval iterators and config validation."""

import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest

from dbagent.database import Query
from dbagent.errors import ConfigError
from dbagent.qan import Config, FileIntervalIter, PerfSchemaIntervalIter

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def tick_at(n):
    return T0 + timedelta(minutes=n)


async def next_interval(it):
    return await asyncio.wait_for(it.interval_chan.get(), 1)


class TestFileIntervalIter:
    @pytest.mark.asyncio
    async def test_contiguous_intervals(self, logger, tmp_path):
        slow_log = tmp_path / "slow.log"
        slow_log.write_bytes(b"x" * 100)
        ticks = asyncio.Queue()
        it = FileIntervalIter(logger, lambda: str(slow_log), ticks)
        it.start()
        try:
            ticks.put_nowait(tick_at(0))
            await asyncio.sleep(0.05)
            assert it.interval_chan.empty()

            with open(slow_log, "ab") as f:
                f.write(b"y" * 50)
            ticks.put_nowait(tick_at(1))
            first = await next_interval(it)
            assert (first.number, first.start_offset, first.end_offset) == (1, 100, 150)
            assert (first.start_time, first.stop_time) == (tick_at(0), tick_at(1))
            assert first.filename == str(slow_log)

            with open(slow_log, "ab") as f:
                f.write(b"z" * 10)
            ticks.put_nowait(tick_at(2))
            second = await next_interval(it)
            assert (second.number, second.start_offset, second.end_offset) == (2, 150, 160)
        finally:
            await it.stop()
        assert not it.running

    @pytest.mark.asyncio
    async def test_new_file_starts_at_zero(self, logger, tmp_path):
        slow_log = tmp_path / "slow.log"
        slow_log.write_bytes(b"x" * 100)
        ticks = asyncio.Queue()
        it = FileIntervalIter(logger, lambda: str(slow_log), ticks)
        it.start()
        try:
            ticks.put_nowait(tick_at(0))
            await asyncio.sleep(0.05)
            os.rename(slow_log, tmp_path / "slow.log-1")
            slow_log.write_bytes(b"n" * 30)
            ticks.put_nowait(tick_at(1))
            interval = await next_interval(it)
            assert (interval.start_offset, interval.end_offset) == (0, 30)
        finally:
            await it.stop()

    @pytest.mark.asyncio
    async def test_missing_file_resets(self, logger, log_chan, tmp_path):
        ticks = asyncio.Queue()
        it = FileIntervalIter(logger, lambda: str(tmp_path / "nope.log"), ticks)
        it.start()
        try:
            ticks.put_nowait(tick_at(0))
            ticks.put_nowait(tick_at(1))
            await asyncio.sleep(0.05)
            assert it.interval_chan.empty()
        finally:
            await it.stop()
        assert any(m.startswith("Cannot get slow log file") for m in log_chan.messages())

    @pytest.mark.asyncio
    async def test_stale_ticks_dropped_on_start(self, logger, tmp_path):
        slow_log = tmp_path / "slow.log"
        slow_log.write_bytes(b"x")
        ticks = asyncio.Queue()
        ticks.put_nowait(tick_at(0))
        it = FileIntervalIter(logger, lambda: str(slow_log), ticks)
        it.start()
        try:
            assert ticks.empty()
        finally:
            await it.stop()


class TestPerfSchemaIntervalIter:
    @pytest.mark.asyncio
    async def test_one_interval_per_tick(self, logger):
        ticks = asyncio.Queue()
        it = PerfSchemaIntervalIter(logger, ticks)
        it.start()
        try:
            ticks.put_nowait(tick_at(0))
            first = await next_interval(it)
            assert (first.number, first.start_time, first.stop_time) == (1, None, tick_at(0))
            ticks.put_nowait(tick_at(1))
            second = await next_interval(it)
            assert (second.number, second.start_time, second.stop_time) == (2, tick_at(0), tick_at(1))
        finally:
            await it.stop()


QAN_CONFIG = {
    "uuid": "m1",
    "start": [{"set": "SET GLOBAL slow_query_log=ON"}],
    "stop": ["SET GLOBAL slow_query_log=OFF"],
    "interval": 60,
}


class TestConfig:
    def test_from_dict(self):
        config = Config.from_dict(QAN_CONFIG)
        assert config.start[0].set == "SET GLOBAL slow_query_log=ON"
        assert config.stop[0].set == "SET GLOBAL slow_query_log=OFF"
        assert config.worker_run_time == 55
        assert config.collect_from == "slowlog"
        assert Config.from_dict(config.to_dict()) == config

    @pytest.mark.parametrize("change,error", [
        ({"uuid": ""}, "no MySQL instance uuid"),
        ({"collect_from": "tcpdump"}, "Invalid collect_from"),
        ({"start": []}, "start queries are empty"),
        ({"stop": []}, "stop queries are empty"),
        ({"interval": 0}, "interval must be between"),
        ({"interval": 3601}, "interval must be between"),
        ({"worker_run_time": 0}, "worker_run_time must be between"),
        ({"max_slow_log_size": -1}, "max_slow_log_size"),
        ({"interval": "often"}, "Invalid QAN config"),
    ])
    def test_invalid(self, change, error):
        with pytest.raises(ConfigError, match=error):
            Config.from_dict({**QAN_CONFIG, **change})

    def test_perfschema_needs_no_queries(self):
        config = Config.from_dict({"uuid": "m1", "collect_from": "perfschema"})
        assert config.start == []

    def test_not_an_object(self):
        with pytest.raises(ConfigError):
            Config.from_dict(None)


class TestQuery:
    @pytest.mark.parametrize("expect,want", [
        (0, "0"),
        (False, "0"),
        (True, "1"),
        ("OFF", "OFF"),
        (None, ""),
    ])
    def test_falsy_expect_kept(self, expect, want):
        query = Query.from_value({"set": "SET GLOBAL slow_query_log=OFF",
                                  "verify": "SELECT @@GLOBAL.slow_query_log",
                                  "expect": expect})
        assert query.expect == want
        assert query.verify == "SELECT @@GLOBAL.slow_query_log"

    def test_capitalized_keys(self):
        query = Query.from_value({"Set": "SET GLOBAL long_query_time=0", "Verify": "SELECT 1", "Expect": 0})
        assert (query.set, query.verify, query.expect) == ("SET GLOBAL long_query_time=0", "SELECT 1", "0")

    def test_plain_string(self):
        assert Query.from_value("SET GLOBAL slow_query_log=ON") == Query("SET GLOBAL slow_query_log=ON")
