"""Tests for the logger and the shared log channel."""

import pytest

from dbagent.logger import LogChannel, Logger, console
from dbagent.proto import LOG_DEBUG, LOG_ERROR, LOG_INFO, LOG_WARNING, Cmd, LogEntry


class TestLogger:
    def test_entries_carry_service_and_level(self, log_chan):
        logger = Logger(log_chan, "qan")
        logger.info("started")
        logger.warn("slow")
        logger.error("failed")
        assert [(e.service, e.level, e.msg) for e in log_chan.entries] == [
            ("qan", LOG_INFO, "started"),
            ("qan", LOG_WARNING, "slow"),
            ("qan", LOG_ERROR, "failed"),
        ]

    def test_child_and_cmd_loggers(self, log_chan):
        logger = Logger(log_chan, "agent", debug=True)
        child = logger.create_child("data")
        child.debug("x")
        logger.for_cmd(Cmd(id=12)).info("y")
        assert log_chan.entries[0].service == "data"
        assert log_chan.entries[0].level == LOG_DEBUG
        assert log_chan.entries[1].cmd_id == 12
        assert child.debug_enabled

    def test_offline_entry(self, log_chan):
        Logger(log_chan, "log").offline(LOG_WARNING, "link down")
        assert log_chan.entries[0].offline

    def test_prints_without_channel(self, capsys):
        logger = Logger(None, "agent")
        logger.info("hello")
        logger.debug("hidden")
        out = capsys.readouterr().out
        assert "[agent] INFO: hello" in out
        assert "hidden" not in out

    def test_critical_always_printed(self, log_chan, capsys):
        Logger(log_chan, "agent").critical("boom")
        assert "CRITICAL: boom" in capsys.readouterr().out
        assert log_chan.entries[0].msg == "boom"

    def test_console(self, capsys):
        console("DB Agent 1.0.4")
        assert capsys.readouterr().out == "DB Agent 1.0.4\n"


class TestLogChannel:
    def test_unbound_put_fails(self):
        chan = LogChannel()
        assert not chan.bound
        assert chan.put(LogEntry(level=LOG_INFO, service="x", msg="dropped")) is False

    @pytest.mark.asyncio
    async def test_bound_put_and_drop(self):
        chan = LogChannel(size=1)
        chan.bind()
        logger = Logger(chan, "agent")
        logger.info("one")
        logger.info("two")
        assert len(chan) == 1
        assert chan.dropped == 1
        assert chan.queue.get_nowait().msg == "one"
        chan.unbind()
        assert len(chan) == 0
