from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from botfleet.docker.config import DockerConfig
from botfleet.docker.runtime import DockerRuntime, bot_command, container_name
from botfleet.docker.volume import DockerVolumeWriter, VolumeError, VolumeHelper
from botfleet.models.bot import BotState, LogOptions, ResourceLimits, UpdateBotSpec
from botfleet.runner.config_injection import build_config_files
from botfleet.runner.errors import RunnerError
from conftest import RecordingWriter, exited_state, running_state


@pytest.fixture
def runtime(docker_config, docker_client, recording_writer):
    return DockerRuntime(docker_config, client=docker_client, config_writer=recording_writer)


def make_container(state, labels=None, attrs=None):
    container = MagicMock()
    container.id = "abc123"
    container.short_id = "abc123"
    container.labels = labels or {"botfleet.bot.id": "bot-1", "botfleet.bot.api-port": "8080"}
    container.attrs = {
        "Created": "2024-03-01T11:59:00Z",
        "State": state,
        "NetworkSettings": {
            "Networks": {"botfleet-network": {"IPAddress": "172.18.0.5"}},
            "Ports": {"8080/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}]},
        },
        **(attrs or {}),
    }
    container.stats.return_value = {"memory_stats": {"usage": 2048}}
    return container


class TestCreateBot:

    def test_creates_and_starts_container(self, runtime, docker_client, bot_spec, recording_writer):
        container_id = runtime.create_bot(bot_spec)

        assert container_id == docker_client.containers.create.return_value.id
        docker_client.containers.create.return_value.start.assert_called_once()
        options = docker_client.containers.create.call_args.kwargs
        assert options["name"] == "botfleet-bot-bot-1"
        assert options["labels"]["botfleet.bot.id"] == "bot-1"
        assert options["labels"]["botfleet.bot.api-port"] == "8080"
        assert options["ports"] == {"8080/tcp": None}
        assert options["network_mode"] == "botfleet-network"
        assert options["command"][0] == "trade"
        assert "bot-1/config.secure.json" in recording_writer.files

    def test_applies_resource_limits(self, runtime, docker_client, bot_spec):
        spec = bot_spec.model_copy(update={"resource_limits": ResourceLimits(memory_bytes=512 * 1024 ** 2, cpu_quota=1.5)})
        runtime.create_bot(spec)
        options = docker_client.containers.create.call_args.kwargs
        assert options["mem_limit"] == 512 * 1024 ** 2
        assert options["cpu_period"] == 100_000
        assert options["cpu_quota"] == 150_000

    def test_start_failure_rolls_back_container_and_config(self, runtime, docker_client, bot_spec, recording_writer):
        container = docker_client.containers.create.return_value
        container.start.side_effect = APIError("port already allocated")

        with pytest.raises(RunnerError) as exc_info:
            runtime.create_bot(bot_spec)

        assert exc_info.value.retryable is True
        assert exc_info.value.operation == "CreateBot"
        container.remove.assert_called_once_with(force=True)
        assert recording_writer.removed == ["bot-1"]
        assert recording_writer.files == {}

    def test_create_failure_leaves_no_config_files(self, runtime, docker_client, bot_spec, recording_writer):
        docker_client.containers.create.side_effect = APIError("invalid mount config")

        with pytest.raises(RunnerError) as exc_info:
            runtime.create_bot(bot_spec)

        assert exc_info.value.retryable is True
        assert exc_info.value.bot_id == "bot-1"
        assert recording_writer.removed == ["bot-1"]
        assert recording_writer.files == {}

    def test_config_failure_creates_no_container(self, docker_config, docker_client, bot_spec):
        writer = RecordingWriter(fail_with=RunnerError("InjectConfig", "", APIError("volume gone"), retryable=True))
        runtime = DockerRuntime(docker_config, client=docker_client, config_writer=writer)

        with pytest.raises(RunnerError) as exc_info:
            runtime.create_bot(bot_spec)

        assert exc_info.value.bot_id == "bot-1"
        assert exc_info.value.retryable is True
        docker_client.containers.create.assert_not_called()
        assert "bot-1" in writer.removed

    def test_existing_bot_is_rejected_without_touching_it(self, runtime, docker_client, bot_spec, recording_writer):
        existing = make_container(running_state())
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = existing

        with pytest.raises(RunnerError) as exc_info:
            runtime.create_bot(bot_spec)

        assert exc_info.value.retryable is False
        existing.remove.assert_not_called()
        assert recording_writer.removed == []

    def test_missing_network_is_created(self, runtime, docker_client, bot_spec):
        docker_client.networks.list.return_value = []
        runtime.create_bot(bot_spec)
        docker_client.networks.create.assert_called_once()
        assert docker_client.networks.create.call_args.args[0] == "botfleet-network"


def test_bot_command_with_data_bundle(bot_spec):
    spec = bot_spec.model_copy(update={"data_download_url": "https://example.com/data.tar.gz"})
    _, paths = build_config_files(spec, "/freqtrade/user_data")
    entrypoint, command = bot_command(spec, paths)

    assert entrypoint == ["/bin/sh", "-c"]
    script = command[0]
    assert "tar -xzf /tmp/bot-data.tar.gz -C /freqtrade/user_data/bot-1/data" in script
    assert "exec freqtrade trade --config /freqtrade/user_data/bot-1/config.exchange.json" in script
    assert "https://example.com" not in script


class TestLookup:

    def test_unknown_bot_is_not_found_and_not_retryable(self, runtime):
        with pytest.raises(RunnerError) as exc_info:
            runtime.get_bot_status("ghost")
        assert exc_info.value.not_found
        assert exc_info.value.retryable is False
        assert str(exc_info.value) == "runtime GetBotStatus failed for bot ghost: bot not found: ghost"

    def test_falls_back_to_label_lookup(self, runtime, docker_client):
        container = make_container(running_state())
        docker_client.containers.list.return_value = [container]
        status = runtime.get_bot_status("bot-1")
        assert status.container_id == "abc123"
        filters = docker_client.containers.list.call_args.kwargs["filters"]
        assert filters == {"label": "botfleet.bot.id=bot-1"}

    def test_id_lookup_ignores_unlabelled_containers(self, runtime, docker_client):
        foreign = make_container(running_state(), labels={"botfleet.backtest.id": "bt-a"})

        def get(key):
            if key == "deadbeef":
                return foreign
            raise NotFound("nope")

        docker_client.containers.get.side_effect = get
        with pytest.raises(RunnerError) as exc_info:
            runtime.get_bot_status("deadbeef")
        assert exc_info.value.not_found

    def test_daemon_failure_is_retryable(self, runtime, docker_client):
        docker_client.containers.get.side_effect = APIError("daemon unavailable")
        with pytest.raises(RunnerError) as exc_info:
            runtime.stop_bot("bot-1")
        assert exc_info.value.retryable is True
        assert not exc_info.value.not_found


class TestStatus:

    def _use(self, docker_client, container):
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = container

    def test_running_bot(self, runtime, docker_client):
        self._use(docker_client, make_container(running_state()))
        status = runtime.get_bot_status("bot-1")
        assert status.status == BotState.RUNNING
        assert status.healthy is True
        assert status.ip_address == "172.18.0.5"
        assert status.host_port == 49153
        assert status.usage.memory_bytes == 2048
        assert status.started_at is not None
        assert status.stopped_at is None

    def test_stats_failure_degrades_to_empty_usage(self, runtime, docker_client):
        container = make_container(running_state())
        container.stats.side_effect = APIError("stats unavailable")
        self._use(docker_client, container)
        status = runtime.get_bot_status("bot-1")
        assert status.status == BotState.RUNNING
        assert status.usage.memory_bytes == 0

    def test_crashed_bot(self, runtime, docker_client):
        container = make_container(exited_state(1, Error="strategy import failed"))
        self._use(docker_client, container)
        status = runtime.get_bot_status("bot-1")
        assert status.status == BotState.STOPPED
        assert status.error_message == "container exited with code 1: strategy import failed"
        container.stats.assert_not_called()

    def test_api_url_uses_daemon_host_and_published_port(self, docker_client, recording_writer):
        runtime = DockerRuntime(DockerConfig(host="tcp://10.0.0.5:2376"), client=docker_client,
                                config_writer=recording_writer)
        self._use(docker_client, make_container(running_state()))
        assert runtime.get_bot_api_url("bot-1") == "http://10.0.0.5:49153"
        assert runtime.host_address() == "10.0.0.5"

    def test_api_url_without_port_mapping(self, runtime, docker_client):
        self._use(docker_client, make_container(running_state(), attrs={"NetworkSettings": {}}))
        with pytest.raises(RunnerError, match="no host port mapping"):
            runtime.get_bot_api_url("bot-1")

    def test_container_ip_missing(self, runtime, docker_client):
        self._use(docker_client, make_container(running_state(), attrs={"NetworkSettings": {}}))
        with pytest.raises(RunnerError, match="no network IP address"):
            runtime.get_container_ip("bot-1")


class TestLifecycle:

    @pytest.fixture
    def container(self, docker_client):
        container = make_container(running_state())
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = container
        return container

    def test_stop_uses_timeout(self, runtime, container):
        runtime.stop_bot("bot-1")
        container.stop.assert_called_once_with(timeout=30)

    def test_delete_removes_container_and_config(self, runtime, container, recording_writer):
        runtime.delete_bot("bot-1")
        container.remove.assert_called_once_with(force=True, v=True)
        assert recording_writer.removed == ["bot-1"]

    def test_delete_by_container_id_removes_workload_config(self, runtime, docker_client, recording_writer):
        container_id = "f00dfeed" * 8
        container = make_container(running_state())

        def get(key):
            if key == container_id:
                return container
            raise NotFound("nope")

        docker_client.containers.get.side_effect = get
        runtime.delete_bot(container_id)

        container.remove.assert_called_once_with(force=True, v=True)
        assert recording_writer.removed == ["bot-1"]

    def test_update_resources(self, runtime, container):
        runtime.update_bot("bot-1", UpdateBotSpec(resource_limits=ResourceLimits(memory_bytes=1024 ** 3, cpu_quota=0.5)))
        container.update.assert_called_once_with(
            mem_limit=1024 ** 3, memswap_limit=-1, cpu_period=100_000, cpu_quota=50_000,
        )

    def test_image_update_is_rejected(self, runtime, container):
        with pytest.raises(RunnerError, match="image updates not supported") as exc_info:
            runtime.update_bot("bot-1", UpdateBotSpec(image="freqtradeorg/freqtrade:develop"))
        assert exc_info.value.retryable is False
        container.update.assert_not_called()

    def test_logs_select_stream(self, runtime, container):
        container.logs.return_value = iter([b"2024-03-01T12:00:00.000000000Z hello\n"])
        with runtime.get_bot_logs("bot-1", LogOptions(stream="stderr", timestamps=True, tail=10)) as reader:
            entries = list(reader)
        kwargs = container.logs.call_args.kwargs
        assert (kwargs["stdout"], kwargs["stderr"], kwargs["tail"]) == (False, True, 10)
        assert entries[0].message == "hello"
        assert entries[0].stream == "stderr"
        assert entries[0].timestamp is not None


def test_list_bots_skips_unlabelled(runtime, docker_client):
    docker_client.containers.list.return_value = [
        make_container(running_state()),
        make_container(running_state(), labels={"botfleet.managed": "true"}),
    ]
    statuses = runtime.list_bots()
    assert [s.bot_id for s in statuses] == ["bot-1"]


def test_container_name():
    assert container_name("bot-1") == "botfleet-bot-bot-1"


def test_health_check_wraps_ping_failure(runtime, docker_client):
    docker_client.ping.side_effect = APIError("connection refused")
    with pytest.raises(RunnerError) as exc_info:
        runtime.health_check()
    assert exc_info.value.retryable is True


class TestVolumeWriter:

    @pytest.fixture
    def writer(self, docker_client):
        return DockerVolumeWriter(VolumeHelper(docker_client), "bot-configs")

    def test_rejected_archive_is_a_retryable_runner_error(self, writer, docker_client):
        docker_client.containers.create.return_value.put_archive.return_value = False
        with pytest.raises(RunnerError) as exc_info:
            writer.write_files({"bot-1/config.bot.json": b"{}"})
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.cause, VolumeError)
        docker_client.containers.create.return_value.remove.assert_called_once_with(force=True)

    def test_failed_removal_is_a_runner_error(self, writer, docker_client):
        helper = docker_client.containers.create.return_value
        helper.wait.return_value = {"StatusCode": 1}
        helper.logs.return_value = b"rm: permission denied"
        with pytest.raises(RunnerError, match="permission denied") as exc_info:
            writer.remove_directory("bot-1")
        assert exc_info.value.retryable is True

    def test_path_escape_is_not_retryable(self, writer):
        with pytest.raises(RunnerError) as exc_info:
            writer.write_files({"../outside.json": b"{}"})
        assert exc_info.value.retryable is False
