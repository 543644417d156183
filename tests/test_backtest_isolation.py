"""Concurrent backtests never share a writable path, and all read one dataset."""
import io
import json
import tarfile
from unittest.mock import MagicMock

import pytest

from botfleet.docker.backtest import DockerBacktestRunner, build_backtest_mounts
from botfleet.models.backtest import BacktestSpec
from botfleet.runner.errors import RunnerError
from botfleet.runner.workspace import (
    backtest_config, backtest_data_path, backtest_files, backtest_results_path, build_backtest_command,
)

BASE = "/freqtrade/user_data"
IDS = ["bt-a", "bt-b", "bt-c"]


def make_spec(backtest_id, **overrides):
    fields = dict(
        id=backtest_id,
        strategy_name="Sample Strategy",
        strategy_code="class SampleStrategy:\n    pass\n",
        strategy_config={"timeframe": "5m", "dry_run": False},
        backtest_config={"timerange": "20240101-20240201"},
    )
    fields.update(overrides)
    return BacktestSpec(**fields)


def test_commands_use_private_userdir_and_never_datadir():
    commands = {bid: build_backtest_command(make_spec(bid), BASE) for bid in IDS}
    for bid, command in commands.items():
        assert command[0] == "backtesting"
        assert "--datadir" not in command
        assert command[command.index("--userdir") + 1] == f"{BASE}/{bid}"
        assert command[command.index("--config") + 1] == f"{BASE}/{bid}/config.json"
        assert command[command.index("--strategy") + 1] == "SampleStrategy"
        assert command[command.index("--data-format-ohlcv") + 1] == "json"

    userdirs = {c[c.index("--userdir") + 1] for c in commands.values()}
    assert len(userdirs) == len(IDS)


def test_workspace_paths_are_disjoint():
    results = {backtest_results_path(bid, BASE) for bid in IDS}
    data = {backtest_data_path(bid, BASE) for bid in IDS}
    assert len(results) == len(data) == len(IDS)
    assert backtest_results_path("bt-a", BASE) == f"{BASE}/bt-a/backtest_results"


def test_mounts_share_one_read_only_dataset():
    for bid in IDS:
        workspace, data = build_backtest_mounts(bid, "shared-data", BASE)
        assert workspace["Source"] == f"botfleet-backtest-{bid}"
        assert workspace["Target"] == BASE
        assert workspace["ReadOnly"] is False
        assert data["Source"] == "shared-data"
        assert data["Target"] == f"{BASE}/{bid}/data"
        assert data["ReadOnly"] is True


def test_backtest_files_are_scoped_to_workspace():
    files = backtest_files(make_spec("bt-a"))
    assert set(files) == {"bt-a/config.json", "bt-a/strategies/SampleStrategy.py"}


def test_backtest_config_is_always_dry_run():
    config = backtest_config(make_spec("bt-a"))
    assert config["dry_run"] is True
    assert config["timerange"] == "20240101-20240201"
    assert config["timeframe"] == "5m"


def test_backtest_id_rejects_path_separators():
    with pytest.raises(ValueError):
        make_spec("../escape")


class TestDockerBacktestRunner:

    @pytest.fixture
    def runner(self, docker_config, docker_client):
        return DockerBacktestRunner(docker_config, client=docker_client, shared_data_volume="shared-data")

    def test_each_run_gets_its_own_container_and_volume(self, runner, docker_client):
        for bid in IDS:
            runner.run_backtest(make_spec(bid))

        created = [c.kwargs for c in docker_client.containers.create.call_args_list
                   if c.kwargs.get("name", "").startswith("botfleet-backtest-")]
        assert [c["name"] for c in created] == [f"botfleet-backtest-{bid}" for bid in IDS]
        sources = [{m["Source"] for m in c["mounts"]} for c in created]
        assert sources == [{f"botfleet-backtest-{bid}", "shared-data"} for bid in IDS]
        for options, bid in zip(created, IDS):
            assert options["labels"]["botfleet.backtest.id"] == bid
            assert options["labels"]["botfleet.task.type"] == "backtest"

    def test_default_image_follows_freqtrade_version(self, runner, docker_client):
        runner.run_backtest(make_spec("bt-a", freqtrade_version="2024.3"))
        names = [c.args[0] if c.args else c.kwargs.get("image") for c in docker_client.containers.create.call_args_list]
        assert "freqtradeorg/freqtrade:2024.3" in names

    def test_workspace_copy_failure_is_wrapped(self, runner, docker_client):
        docker_client.containers.create.return_value.put_archive.return_value = False

        with pytest.raises(RunnerError) as exc_info:
            runner.run_backtest(make_spec("bt-a"))

        assert exc_info.value.retryable is True
        assert exc_info.value.operation == "RunBacktest"
        assert "failed to copy files into volume botfleet-backtest-bt-a" in str(exc_info.value)
        docker_client.volumes.get.return_value.remove.assert_called_once_with(force=True)

    def test_existing_backtest_is_rejected(self, runner, docker_client):
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = MagicMock()
        with pytest.raises(RunnerError) as exc_info:
            runner.run_backtest(make_spec("bt-a"))
        assert exc_info.value.retryable is False
        docker_client.containers.create.assert_not_called()

    def test_unknown_backtest_is_not_found(self, runner):
        with pytest.raises(RunnerError) as exc_info:
            runner.get_backtest_status("missing")
        assert exc_info.value.not_found
        assert exc_info.value.retryable is False

    def test_result_is_read_from_the_backtest_workspace(self, runner, docker_client):

        def tar_of(content: bytes):
            buf = io.BytesIO()
            with tarfile.open(fileobj=buf, mode="w") as tar:
                info = tarfile.TarInfo("file")
                info.size = len(content)
                tar.addfile(info, io.BytesIO(content))
            return [buf.getvalue()]

        raw = {"strategy": {"SampleStrategy": {"total_trades": 4, "wins": 3, "losses": 1}}}
        archives = {
            f"{BASE}/bt-b/backtest_results/.last_result.json":
                tar_of(json.dumps({"latest_backtest": "backtest-result-1.json"}).encode()),
            f"{BASE}/bt-b/backtest_results/backtest-result-1.json": tar_of(json.dumps(raw).encode()),
        }
        container = MagicMock()
        container.id = "c-bt-b"
        container.attrs = {"Created": "2024-03-01T12:00:00Z", "State": {
            "Status": "exited", "Running": False, "ExitCode": 0,
            "StartedAt": "2024-03-01T12:00:01Z", "FinishedAt": "2024-03-01T12:05:00Z",
        }}
        container.logs.return_value = b"done\n"
        container.get_archive.side_effect = lambda path: (archives[path], {})
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = container

        result = runner.get_backtest_result("bt-b")
        assert result.status.value == "completed"
        assert result.exit_code == 0
        assert result.raw_result == raw
        assert result.summary.total_trades == 4
        assert result.summary.strategy_name == "SampleStrategy"
