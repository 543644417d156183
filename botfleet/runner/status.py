"""
Normalization of container-engine state and raw stats counters.

Everything here is pure: inputs are the JSON-shaped dicts the engine returns
from inspect and a one-shot stats call, outputs are botfleet models.
"""
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from ..models.bot import BotState, ResourceUsage
from ..models.backtest import TaskStatus

ZERO_TIME = "0001-01-01T00:00:00Z"

_FRACTION = re.compile(r"\.(\d+)")


def parse_engine_time(value: Optional[str]) -> Optional[datetime]:
    """
    Parse the engine's RFC 3339 timestamps (nanosecond precision, 'Z' suffix).

    Returns None for empty values, the zero time and anything unparseable.
    """
    if not value or value.startswith("0001-01-01"):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # datetime only keeps microseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_healthy(state: Optional[Dict[str, Any]]) -> bool:
    """Running, and either no healthcheck is configured or it reports healthy."""
    if not state or not state.get("Running"):
        return False
    health = state.get("Health")
    return not health or health.get("Status") == "healthy"


def map_container_state(state: Optional[Dict[str, Any]]) -> BotState:
    if not state:
        return BotState.ERROR

    # the engine keeps Running=true while paused or restarting
    if state.get("Restarting"):
        return BotState.CREATING
    if state.get("Paused"):
        return BotState.STOPPED
    if state.get("Running"):
        return BotState.RUNNING if is_healthy(state) else BotState.UNHEALTHY
    if state.get("Dead") or state.get("OOMKilled"):
        return BotState.ERROR
    return BotState.STOPPED


def exit_error_message(state: Optional[Dict[str, Any]]) -> Optional[str]:
    """Error text for a container that exited non-zero, None otherwise."""
    if not state or state.get("Running"):
        return None
    exit_code = state.get("ExitCode") or 0
    if exit_code == 0:
        return None
    message = f"container exited with code {exit_code}"
    if state.get("OOMKilled"):
        message += ": out of memory"
    elif state.get("Error"):
        message += f": {state['Error']}"
    return message


def task_status_from_state(state: Optional[Dict[str, Any]]) -> Tuple[TaskStatus, Optional[str]]:
    """
    Map a one-shot container's state to a task status.

    running -> running, exited 0 -> completed, exited non-zero -> failed,
    created -> pending. Anything else is reported as failed.
    """
    if not state:
        return TaskStatus.FAILED, "container state unavailable"

    status = state.get("Status", "")
    if status in ("running", "restarting") or state.get("Running"):
        return TaskStatus.RUNNING, None
    if status == "created":
        return TaskStatus.PENDING, None
    if status in ("exited", "dead"):
        if (state.get("ExitCode") or 0) == 0 and not state.get("OOMKilled"):
            return TaskStatus.COMPLETED, None
        return TaskStatus.FAILED, exit_error_message(state) or "container was killed"
    return TaskStatus.FAILED, f"unexpected container state: {status}"


def calculate_cpu_percent(stats: Dict[str, Any]) -> float:
    """
    CPU usage as a percentage of one core, scaled by core count.

    Needs two samples (current and previous) with a positive system delta,
    otherwise reports 0. Core count comes from the per-core list (cgroup v1),
    then online_cpus (cgroup v2), then falls back to 1.
    """
    cpu = stats.get("cpu_stats") or {}
    pre = stats.get("precpu_stats") or {}
    total = (cpu.get("cpu_usage") or {}).get("total_usage") or 0
    pre_total = (pre.get("cpu_usage") or {}).get("total_usage") or 0
    if total <= 0 or pre_total <= 0:
        return 0.0

    system_delta = (cpu.get("system_cpu_usage") or 0) - (pre.get("system_cpu_usage") or 0)
    if system_delta <= 0:
        return 0.0

    cores = len((cpu.get("cpu_usage") or {}).get("percpu_usage") or [])
    if cores == 0:
        cores = cpu.get("online_cpus") or 1

    return (total - pre_total) / system_delta * cores * 100.0


def resource_usage_from_stats(stats: Optional[Dict[str, Any]]) -> ResourceUsage:
    if not stats:
        return ResourceUsage()

    usage = ResourceUsage(
        cpu_percent=calculate_cpu_percent(stats),
        memory_bytes=(stats.get("memory_stats") or {}).get("usage") or 0,
    )

    for iface in (stats.get("networks") or {}).values():
        usage.network_rx_bytes += iface.get("rx_bytes") or 0
        usage.network_tx_bytes += iface.get("tx_bytes") or 0

    blkio = (stats.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []
    for entry in blkio:
        op = (entry.get("op") or "").lower()
        if op == "read":
            usage.block_read_bytes += entry.get("value") or 0
        elif op == "write":
            usage.block_write_bytes += entry.get("value") or 0

    return usage


def first_ip_address(attrs: Dict[str, Any]) -> Optional[str]:
    networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
    for network in networks.values():
        if network and network.get("IPAddress"):
            return network["IPAddress"]
    return None


def host_port_for(attrs: Dict[str, Any], container_port: Optional[int] = None) -> Optional[int]:
    """
    Host port published for `container_port`, or the first published port
    when no container port is given.
    """
    ports = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    for key, bindings in ports.items():
        if container_port is not None and key.split("/")[0] != str(container_port):
            continue
        for binding in bindings or []:
            host_port = binding.get("HostPort")
            if host_port and host_port.isdigit():
                return int(host_port)
    return None
