from datetime import datetime, timezone

import pytest

from botfleet.models.backtest import TaskStatus
from botfleet.models.bot import BotState
from botfleet.runner.status import (
    calculate_cpu_percent,
    exit_error_message,
    first_ip_address,
    host_port_for,
    map_container_state,
    parse_engine_time,
    resource_usage_from_stats,
    task_status_from_state,
)
from conftest import exited_state, running_state


class TestContainerStateMapping:

    def test_missing_state_is_error(self):
        assert map_container_state(None) == BotState.ERROR

    def test_running_without_healthcheck(self):
        assert map_container_state(running_state()) == BotState.RUNNING

    def test_running_and_healthy(self):
        assert map_container_state(running_state(Health={"Status": "healthy"})) == BotState.RUNNING

    def test_running_but_unhealthy(self):
        assert map_container_state(running_state(Health={"Status": "unhealthy"})) == BotState.UNHEALTHY

    def test_restarting_is_creating(self):
        assert map_container_state(running_state(Status="restarting", Restarting=True)) == BotState.CREATING

    def test_paused_is_stopped(self):
        assert map_container_state(running_state(Status="paused", Paused=True)) == BotState.STOPPED

    def test_exited_is_stopped(self):
        assert map_container_state(exited_state(0)) == BotState.STOPPED

    def test_oom_killed_is_error(self):
        assert map_container_state(exited_state(137, OOMKilled=True)) == BotState.ERROR

    def test_dead_is_error(self):
        assert map_container_state(exited_state(1, Status="dead", Dead=True)) == BotState.ERROR


class TestTaskStatus:

    def test_running(self):
        assert task_status_from_state(running_state()) == (TaskStatus.RUNNING, None)

    def test_created_is_pending(self):
        assert task_status_from_state({"Status": "created", "Running": False}) == (TaskStatus.PENDING, None)

    def test_exit_zero_completes(self):
        assert task_status_from_state(exited_state(0)) == (TaskStatus.COMPLETED, None)

    def test_exit_nonzero_fails_with_message(self):
        status, error = task_status_from_state(exited_state(2, Error="boom"))
        assert status == TaskStatus.FAILED
        assert error == "container exited with code 2: boom"

    def test_oom_fails_even_with_zero_exit(self):
        status, error = task_status_from_state(exited_state(0, OOMKilled=True))
        assert status == TaskStatus.FAILED

    def test_unknown_state(self):
        status, error = task_status_from_state({"Status": "removing", "Running": False})
        assert status == TaskStatus.FAILED
        assert error == "unexpected container state: removing"


def test_exit_error_message_for_oom():
    assert exit_error_message(exited_state(137, OOMKilled=True)) == "container exited with code 137: out of memory"
    assert exit_error_message(exited_state(0)) is None
    assert exit_error_message(running_state()) is None


def test_parse_engine_time():
    parsed = parse_engine_time("2024-03-01T12:00:00.123456789Z")
    assert parsed == datetime(2024, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
    assert parse_engine_time("0001-01-01T00:00:00Z") is None
    assert parse_engine_time("") is None
    assert parse_engine_time("not a time") is None


class TestCpuPercent:

    def _stats(self, total, pre_total, system, pre_system, percpu=None, online=None):
        cpu = {"cpu_usage": {"total_usage": total}, "system_cpu_usage": system}
        if percpu is not None:
            cpu["cpu_usage"]["percpu_usage"] = percpu
        if online is not None:
            cpu["online_cpus"] = online
        return {
            "cpu_stats": cpu,
            "precpu_stats": {"cpu_usage": {"total_usage": pre_total}, "system_cpu_usage": pre_system},
        }

    def test_uses_per_core_list(self):
        stats = self._stats(200, 100, 2000, 1000, percpu=[1, 1, 1, 1])
        assert calculate_cpu_percent(stats) == pytest.approx(40.0)

    def test_falls_back_to_online_cpus(self):
        stats = self._stats(200, 100, 2000, 1000, online=2)
        assert calculate_cpu_percent(stats) == pytest.approx(20.0)

    def test_defaults_to_one_core(self):
        stats = self._stats(200, 100, 2000, 1000)
        assert calculate_cpu_percent(stats) == pytest.approx(10.0)

    def test_first_sample_reports_zero(self):
        assert calculate_cpu_percent(self._stats(200, 0, 2000, 0)) == 0.0

    def test_non_positive_system_delta_reports_zero(self):
        assert calculate_cpu_percent(self._stats(200, 100, 1000, 1000)) == 0.0


def test_resource_usage_sums_networks_and_block_io():
    stats = {
        "memory_stats": {"usage": 1024},
        "networks": {"eth0": {"rx_bytes": 10, "tx_bytes": 20}, "eth1": {"rx_bytes": 5, "tx_bytes": 1}},
        "blkio_stats": {"io_service_bytes_recursive": [
            {"op": "Read", "value": 100},
            {"op": "write", "value": 50},
            {"op": "Total", "value": 150},
        ]},
    }
    usage = resource_usage_from_stats(stats)
    assert usage.memory_bytes == 1024
    assert (usage.network_rx_bytes, usage.network_tx_bytes) == (15, 21)
    assert (usage.block_read_bytes, usage.block_write_bytes) == (100, 50)


def test_missing_stats_give_empty_usage():
    assert resource_usage_from_stats(None).cpu_percent == 0.0


def test_network_lookups():
    attrs = {"NetworkSettings": {
        "Networks": {"none": {"IPAddress": ""}, "botfleet-network": {"IPAddress": "172.18.0.5"}},
        "Ports": {"8080/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}], "9000/tcp": None},
    }}
    assert first_ip_address(attrs) == "172.18.0.5"
    assert host_port_for(attrs, 8080) == 49153
    assert host_port_for(attrs, 9000) is None
    assert host_port_for(attrs) == 49153
    assert host_port_for({}) is None
