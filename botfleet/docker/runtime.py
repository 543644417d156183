import logging
import shlex
from typing import Any, Dict, List, Optional, Tuple

import httpx
from docker.errors import ImageNotFound, NotFound
from docker.types import Mount

from ..config.settings import settings
from ..models.bot import DEFAULT_API_PORT, BotSpec, BotStatus, LogOptions, UpdateBotSpec
from ..runner.config_injection import (
    ConfigFilePaths, ConfigFileWriter, bot_environment, inject_config, remove_config,
    sanitize_strategy_name,
)
from ..runner.errors import BotNotFoundError, RunnerError
from ..runner.interface import Runtime, RunnerType
from ..runner.logs import LogReader
from ..runner import status as state_mapper
from .client import ENGINE_ERRORS, DockerConnection
from .config import DockerConfig
from .volume import MANAGED_LABEL, DockerVolumeWriter, VolumeHelper

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "botfleet-bot-"
LABEL_BOT_ID = "botfleet.bot.id"
LABEL_BOT_NAME = "botfleet.bot.name"
LABEL_API_PORT = "botfleet.bot.api-port"
DEFAULT_NETWORK = "botfleet-network"
BUILTIN_NETWORK_MODES = ("bridge", "host", "none", "default")

_FETCH_BOT_DATA_PY = """\
import os, urllib.request
urllib.request.urlretrieve(os.environ['DATA_DOWNLOAD_URL'], '/tmp/bot-data.tar.gz')
"""


def container_name(bot_id: str) -> str:
    return CONTAINER_PREFIX + bot_id


def bot_command(spec: BotSpec, paths: ConfigFilePaths) -> Tuple[Optional[List[str]], List[str]]:
    """
    (entrypoint, command) for a bot container.

    Without a data URL the image's freqtrade entrypoint is kept. With one, a
    shell wrapper fetches and unpacks the data bundle into the bot's data
    directory and then execs freqtrade.
    """
    trade_args = [
        "trade",
        *paths.config_args(),
        "--strategy", sanitize_strategy_name(spec.strategy_name),
        "--userdir", paths.user_dir,
    ]
    if not spec.data_download_url:
        return None, trade_args

    data_dir = shlex.quote(f"{paths.user_dir}/data")
    script = "\n".join([
        "set -e",
        f"mkdir -p {data_dir}",
        f"python3 -c {shlex.quote(_FETCH_BOT_DATA_PY)}",
        f"tar -xzf /tmp/bot-data.tar.gz -C {data_dir}",
        "rm -f /tmp/bot-data.tar.gz",
        f"exec freqtrade {shlex.join(trade_args)}",
    ])
    return ["/bin/sh", "-c"], [script]


class DockerRuntime(Runtime):
    """
    Runs each bot as one container on a Docker daemon.

    Containers are found by deterministic name first, then by ID, then by
    label, so state never has to be kept on this side.
    """

    def __init__(self, config: DockerConfig, client=None, config_writer: Optional[ConfigFileWriter] = None,
                 user_data_dir: str = settings.USER_DATA_DIR,
                 config_volume: str = settings.BOT_CONFIG_VOLUME,
                 stop_timeout: int = settings.STOP_TIMEOUT,
                 http_timeout: float = settings.BOT_HTTP_TIMEOUT):
        self.config = config
        self.connection: Optional[DockerConnection] = None
        if client is None:
            self.connection = DockerConnection(config)
            client = self.connection.client
        self.client = client

        self.network = config.network or DEFAULT_NETWORK
        self.user_data_dir = user_data_dir
        self.config_volume = config_volume
        self.stop_timeout = stop_timeout
        self.http_timeout = http_timeout
        self.volumes = VolumeHelper(client, image=settings.HELPER_IMAGE)
        self.config_writer = config_writer or DockerVolumeWriter(self.volumes, config_volume)

    # lookup

    def _find_container(self, bot_id: str):
        try:
            return self.client.containers.get(container_name(bot_id))
        except NotFound:
            pass
        try:
            container = self.client.containers.get(bot_id)
            if container.labels.get(LABEL_BOT_ID):
                return container
        except NotFound:
            pass
        matches = self.client.containers.list(all=True, filters={"label": f"{LABEL_BOT_ID}={bot_id}"})
        if matches:
            return matches[0]
        raise BotNotFoundError(bot_id)

    def _lookup(self, operation: str, bot_id: str):
        try:
            return self._find_container(bot_id)
        except BotNotFoundError as e:
            raise RunnerError(operation, bot_id, e, retryable=False) from e
        except ENGINE_ERRORS as e:
            raise RunnerError(operation, bot_id, e, retryable=True) from e

    # provisioning helpers

    def _ensure_network(self, network: str):
        if network in BUILTIN_NETWORK_MODES or network.startswith("container:"):
            return
        if self.client.networks.list(names=[network]):
            return
        logger.info(f"Creating network {network}")
        self.client.networks.create(network, driver="bridge", labels={MANAGED_LABEL: "true"})

    def _ensure_image(self, image: str):
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            pass
        logger.info(f"Pulling image {image}")
        auth = self.config.registry_auth.auth_config() if self.config.registry_auth else None
        self.client.images.pull(image, auth_config=auth)

    def _container_options(self, spec: BotSpec, paths: ConfigFilePaths, network: str) -> Dict[str, Any]:
        entrypoint, command = bot_command(spec, paths)
        options: Dict[str, Any] = {
            "image": spec.image,
            "name": container_name(spec.id),
            "command": command,
            "environment": bot_environment(spec),
            "labels": {
                LABEL_BOT_ID: spec.id,
                LABEL_BOT_NAME: spec.name,
                LABEL_API_PORT: str(spec.api_port),
                MANAGED_LABEL: "true",
            },
            "ports": {f"{spec.api_port}/tcp": None},
            "mounts": [Mount(target=self.user_data_dir, source=self.config_volume, type="volume")],
            "network_mode": network,
            "restart_policy": {"Name": "unless-stopped"},
        }
        if entrypoint:
            options["entrypoint"] = entrypoint

        limits = spec.resource_limits
        if limits.memory_bytes > 0:
            options["mem_limit"] = limits.memory_bytes
        if limits.cpu_quota > 0:
            options["cpu_period"] = limits.cpu_period
            options["cpu_quota"] = limits.cpu_quota_micros()
        return options

    # lifecycle

    def create_bot(self, spec: BotSpec) -> str:
        name = container_name(spec.id)
        network = spec.network_mode or self.network
        logger.info(f"Creating bot {spec.id} ({spec.name}) as {name} from {spec.image}")

        try:
            self._find_container(spec.id)
        except BotNotFoundError:
            pass
        except ENGINE_ERRORS as e:
            raise RunnerError("CreateBot", spec.id, e, retryable=True) from e
        else:
            raise RunnerError("CreateBot", spec.id, ValueError(f"bot {spec.id} already exists"), retryable=False)

        container = None
        config_written = False
        succeeded = False
        try:
            self._ensure_network(network)
            self._ensure_image(spec.image)
            paths = inject_config(self.config_writer, spec, self.user_data_dir)
            config_written = True

            container = self.client.containers.create(**self._container_options(spec, paths, network))
            container.start()
            succeeded = True
        except RunnerError as e:
            raise RunnerError("CreateBot", spec.id, e.cause, retryable=e.retryable) from e
        except ENGINE_ERRORS as e:
            raise RunnerError("CreateBot", spec.id, e, retryable=True) from e
        finally:
            if not succeeded:
                self._rollback_create(spec.id, container, config_written)

        logger.info(f"Bot {spec.id} started in container {container.short_id}")
        return container.id

    def _rollback_create(self, bot_id: str, container, config_written: bool):
        logger.warning(f"Rolling back partially created bot {bot_id}")
        if container is not None:
            try:
                container.remove(force=True)
            except ENGINE_ERRORS as e:
                logger.error(f"Failed to remove container for bot {bot_id}: {e}")
        if config_written:
            remove_config(self.config_writer, bot_id)

    def delete_bot(self, bot_id: str) -> None:
        container = self._lookup("DeleteBot", bot_id)
        # the lookup may have matched a container ID; configs live under the workload ID
        workload_id = container.labels.get(LABEL_BOT_ID) or bot_id
        try:
            container.remove(force=True, v=True)
        except ENGINE_ERRORS as e:
            raise RunnerError("DeleteBot", bot_id, e, retryable=True) from e
        remove_config(self.config_writer, workload_id)
        logger.info(f"Deleted bot {workload_id}")

    def start_bot(self, bot_id: str) -> None:
        container = self._lookup("StartBot", bot_id)
        try:
            container.start()
        except ENGINE_ERRORS as e:
            raise RunnerError("StartBot", bot_id, e, retryable=True) from e

    def stop_bot(self, bot_id: str) -> None:
        container = self._lookup("StopBot", bot_id)
        try:
            container.stop(timeout=self.stop_timeout)
        except ENGINE_ERRORS as e:
            raise RunnerError("StopBot", bot_id, e, retryable=True) from e

    def restart_bot(self, bot_id: str) -> None:
        container = self._lookup("RestartBot", bot_id)
        try:
            container.restart(timeout=self.stop_timeout)
        except ENGINE_ERRORS as e:
            raise RunnerError("RestartBot", bot_id, e, retryable=True) from e

    # inspection

    def _stats(self, container) -> Optional[Dict[str, Any]]:
        try:
            return container.stats(stream=False)
        except ENGINE_ERRORS as e:
            logger.debug(f"Stats unavailable for {container.short_id}: {e}")
            return None

    def _status_from_container(self, bot_id: str, container) -> BotStatus:
        attrs = container.attrs
        state = attrs.get("State")
        started_at = state_mapper.parse_engine_time((state or {}).get("StartedAt"))

        status = BotStatus(
            bot_id=bot_id,
            status=state_mapper.map_container_state(state),
            container_id=container.id,
            healthy=state_mapper.is_healthy(state),
            created_at=state_mapper.parse_engine_time(attrs.get("Created")),
            started_at=started_at,
            last_seen_at=started_at,
            stopped_at=state_mapper.parse_engine_time((state or {}).get("FinishedAt")),
            error_message=state_mapper.exit_error_message(state),
            ip_address=state_mapper.first_ip_address(attrs),
            host_port=state_mapper.host_port_for(attrs),
        )
        if state and state.get("Running"):
            status.usage = state_mapper.resource_usage_from_stats(self._stats(container))
        return status

    def get_bot_status(self, bot_id: str) -> BotStatus:
        container = self._lookup("GetBotStatus", bot_id)
        return self._status_from_container(bot_id, container)

    def get_container_ip(self, bot_id: str) -> str:
        container = self._lookup("GetContainerIP", bot_id)
        ip = state_mapper.first_ip_address(container.attrs)
        if not ip:
            raise RunnerError("GetContainerIP", bot_id, ValueError("container has no network IP address"))
        return ip

    def _api_port(self, container) -> int:
        label = container.labels.get(LABEL_API_PORT)
        if label and label.isdigit():
            return int(label)
        exposed = (container.attrs.get("Config") or {}).get("ExposedPorts") or {}
        if len(exposed) == 1:
            return int(next(iter(exposed)).split("/")[0])
        return DEFAULT_API_PORT

    def host_address(self) -> str:
        return self.config.api_host()

    def get_bot_api_url(self, bot_id: str) -> str:
        container = self._lookup("GetBotAPIURL", bot_id)
        host_port = state_mapper.host_port_for(container.attrs, self._api_port(container))
        if host_port is None:
            raise RunnerError("GetBotAPIURL", bot_id, ValueError("no host port mapping found for API port"))
        return f"http://{self.host_address()}:{host_port}"

    def get_bot_http_client(self, bot_id: str) -> Tuple[httpx.Client, str]:
        url = self.get_bot_api_url(bot_id)
        return httpx.Client(base_url=url, timeout=self.http_timeout), url

    def get_bot_logs(self, bot_id: str, opts: LogOptions) -> LogReader:
        container = self._lookup("GetBotLogs", bot_id)
        kwargs: Dict[str, Any] = {
            "stdout": opts.stream in (None, "stdout"),
            "stderr": opts.stream in (None, "stderr"),
            "stream": True,
            "follow": opts.follow,
            "timestamps": opts.timestamps,
            "tail": opts.tail if opts.tail else "all",
        }
        if opts.since:
            kwargs["since"] = opts.since
        if opts.until:
            kwargs["until"] = opts.until
        try:
            chunks = container.logs(**kwargs)
        except ENGINE_ERRORS as e:
            raise RunnerError("GetBotLogs", bot_id, e, retryable=True) from e
        return LogReader(chunks, stream=opts.stream, timestamps=opts.timestamps)

    def update_bot(self, bot_id: str, spec: UpdateBotSpec) -> None:
        if spec.image is not None:
            raise RunnerError("UpdateBot", bot_id,
                              ValueError("image updates not supported - please recreate the bot"))
        if spec.environment is not None:
            raise RunnerError("UpdateBot", bot_id,
                              ValueError("environment updates not supported - please recreate the bot"))

        container = self._lookup("UpdateBot", bot_id)
        limits = spec.resource_limits
        if limits is None:
            return

        update: Dict[str, Any] = {}
        if limits.memory_bytes > 0:
            update["mem_limit"] = limits.memory_bytes
            # swap must be raised together with memory or the engine rejects it
            update["memswap_limit"] = -1
        if limits.cpu_quota > 0:
            update["cpu_period"] = limits.cpu_period
            update["cpu_quota"] = limits.cpu_quota_micros()
        if not update:
            return
        try:
            container.update(**update)
        except ENGINE_ERRORS as e:
            raise RunnerError("UpdateBot", bot_id, e, retryable=True) from e
        logger.info(f"Updated resource limits of bot {bot_id}: {update}")

    def list_bots(self) -> List[BotStatus]:
        try:
            containers = self.client.containers.list(all=True, filters={"label": f"{MANAGED_LABEL}=true"}, ignore_removed=True)
        except ENGINE_ERRORS as e:
            raise RunnerError("ListBots", "", e, retryable=True) from e

        statuses = []
        for container in containers:
            bot_id = container.labels.get(LABEL_BOT_ID)
            if not bot_id:
                continue
            try:
                statuses.append(self._status_from_container(bot_id, container))
            except ENGINE_ERRORS as e:
                logger.warning(f"Skipping bot {bot_id}, inspect failed: {e}")
        return statuses

    def health_check(self) -> None:
        try:
            self.client.ping()
        except ENGINE_ERRORS as e:
            raise RunnerError("HealthCheck", "", e, retryable=True) from e

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()

    def type(self) -> RunnerType:
        return RunnerType.DOCKER
