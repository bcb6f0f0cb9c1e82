import os
import shutil

import pytest

from dbagent.config import Basedir, Context
from dbagent.logger import Logger

from fakes import FakeLogChannel

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")

AGENT_CONFIG = {
    'agent_uuid': "a1b2c3",
    'api_hostname': "api.example.com",
    'api_key': "secret-key",
    'pidfile': "",
    'links': {},
    'debug': False,
}


@pytest.fixture
def log_chan():
    return FakeLogChannel()


@pytest.fixture
def logger(log_chan):
    return Logger(log_chan, "test", debug=True)


@pytest.fixture
def basedir(tmp_path):
    return Basedir(str(tmp_path / "agent")).init()


@pytest.fixture
def ctx(basedir, log_chan):
    return Context(basedir=basedir, config=dict(AGENT_CONFIG), log_chan=log_chan)


@pytest.fixture
def slow_log(tmp_path):
    """Private copy of slow001.log: 524 bytes, events at offsets 200 and 359"""
    path = tmp_path / "slow.log"
    shutil.copy(os.path.join(FIXTURES, "slow001.log"), path)
    return str(path)
