from unittest.mock import MagicMock

import pytest
from docker.errors import NotFound

from botfleet.docker.config import DockerConfig
from botfleet.models.bot import BotSpec


class RecordingWriter:
    """In-memory config writer; fails on demand after writing."""

    def __init__(self, fail_with=None):
        self.files = {}
        self.removed = []
        self.fail_with = fail_with

    def write_files(self, files):
        self.files.update(files)
        if self.fail_with is not None:
            raise self.fail_with

    def remove_directory(self, relative_path):
        self.removed.append(relative_path)
        prefix = relative_path.rstrip("/") + "/"
        self.files = {k: v for k, v in self.files.items() if not k.startswith(prefix)}


@pytest.fixture
def recording_writer():
    return RecordingWriter()


@pytest.fixture
def docker_config():
    return DockerConfig(host="unix:///var/run/docker.sock")


@pytest.fixture
def docker_client():
    """A docker SDK client where nothing exists yet."""
    client = MagicMock()
    client.containers.get.side_effect = NotFound("no such container")
    client.containers.list.return_value = []
    client.networks.list.return_value = [MagicMock()]
    return client


@pytest.fixture
def bot_spec():
    return BotSpec(
        id="bot-1",
        name="Test Bot",
        image="freqtradeorg/freqtrade:stable",
        strategy_name="RSI Test Strategy",
        strategy_code="class RsiTestStrategy:\n    pass\n",
        exchange_config={"exchange": {"name": "binance", "key": ""}},
        strategy_config={"timeframe": "5m"},
        bot_config={"max_open_trades": 3, "dry_run": True},
        secure_config={"exchange": {"key": "k", "secret": "s"}},
        api_username="freqtrader",
        api_password="secret",
    )


def running_state(**overrides):
    state = {
        "Status": "running",
        "Running": True,
        "Paused": False,
        "Restarting": False,
        "OOMKilled": False,
        "Dead": False,
        "ExitCode": 0,
        "StartedAt": "2024-03-01T12:00:00.123456789Z",
        "FinishedAt": "0001-01-01T00:00:00Z",
    }
    state.update(overrides)
    return state


def exited_state(exit_code=0, **overrides):
    return running_state(**{
        "Status": "exited", "Running": False, "ExitCode": exit_code,
        "FinishedAt": "2024-03-01T13:00:00Z", **overrides,
    })
