import logging
import zipfile
from typing import Any, Dict, List, Optional

from docker.errors import ImageNotFound, NotFound
from docker.types import Mount

from ..config.settings import settings
from ..models.backtest import BacktestResult, BacktestSpec, BacktestStatus, TaskStatus
from ..models.bot import LogOptions
from ..runner.errors import BacktestNotFoundError, RunnerError
from ..runner.interface import BacktestRunner, RunnerType
from ..runner.logs import LogReader
from ..runner import status as state_mapper
from ..runner.workspace import (
    backtest_data_path, backtest_files, backtest_results_path, build_backtest_command,
)
from ..utils.backtest_summary import extract_summary, load_backtest_result
from .client import ENGINE_ERRORS, DockerConnection
from .config import DockerConfig
from .volume import MANAGED_LABEL, VolumeHelper, read_tar_member

logger = logging.getLogger(__name__)

BACKTEST_PREFIX = "botfleet-backtest-"
LABEL_BACKTEST_ID = "botfleet.backtest.id"
LABEL_TASK_TYPE = "botfleet.task.type"
TASK_TYPE_BACKTEST = "backtest"


def backtest_container_name(backtest_id: str) -> str:
    return BACKTEST_PREFIX + backtest_id


def backtest_volume_name(backtest_id: str) -> str:
    return BACKTEST_PREFIX + backtest_id


def build_backtest_mounts(backtest_id: str, shared_data_volume: str,
                          base_dir: str = settings.USER_DATA_DIR) -> List[Mount]:
    """
    Private workspace volume at the user-data base plus the shared candle
    data, read-only, at the workspace's data directory.
    """
    return [
        Mount(target=base_dir, source=backtest_volume_name(backtest_id), type="volume"),
        Mount(target=backtest_data_path(backtest_id, base_dir), source=shared_data_volume,
              type="volume", read_only=True),
    ]


class DockerBacktestRunner(BacktestRunner):

    def __init__(self, config: DockerConfig, client=None,
                 base_dir: str = settings.USER_DATA_DIR,
                 shared_data_volume: str = settings.SHARED_DATA_VOLUME,
                 default_image: str = settings.DEFAULT_BOT_IMAGE,
                 stop_timeout: int = settings.STOP_TIMEOUT):
        self.config = config
        self.connection: Optional[DockerConnection] = None
        if client is None:
            self.connection = DockerConnection(config)
            client = self.connection.client
        self.client = client
        self.network = config.network or "bridge"
        self.base_dir = base_dir
        self.shared_data_volume = shared_data_volume
        self.default_image = default_image
        self.stop_timeout = stop_timeout
        self.volumes = VolumeHelper(client, image=settings.HELPER_IMAGE)

    def _image(self, spec: BacktestSpec) -> str:
        if spec.image:
            return spec.image
        repository = self.default_image.rsplit(":", 1)[0]
        return f"{repository}:{spec.freqtrade_version}"

    def _ensure_image(self, image: str):
        try:
            self.client.images.get(image)
        except ImageNotFound:
            logger.info(f"Pulling image {image}")
            auth = self.config.registry_auth.auth_config() if self.config.registry_auth else None
            self.client.images.pull(image, auth_config=auth)

    def _find_container(self, backtest_id: str):
        try:
            return self.client.containers.get(backtest_container_name(backtest_id))
        except NotFound:
            pass
        matches = self.client.containers.list(all=True, filters={"label": [
            f"{LABEL_BACKTEST_ID}={backtest_id}",
            f"{LABEL_TASK_TYPE}={TASK_TYPE_BACKTEST}",
        ]})
        if matches:
            return matches[0]
        raise BacktestNotFoundError(backtest_id)

    def _lookup(self, operation: str, backtest_id: str):
        try:
            return self._find_container(backtest_id)
        except BacktestNotFoundError as e:
            raise RunnerError(operation, backtest_id, e, retryable=False) from e
        except ENGINE_ERRORS as e:
            raise RunnerError(operation, backtest_id, e, retryable=True) from e

    def run_backtest(self, spec: BacktestSpec) -> str:
        image = self._image(spec)
        volume = backtest_volume_name(spec.id)
        logger.info(f"Starting backtest {spec.id} with strategy {spec.strategy_name} on {image}")

        try:
            self._find_container(spec.id)
        except BacktestNotFoundError:
            pass
        except ENGINE_ERRORS as e:
            raise RunnerError("RunBacktest", spec.id, e, retryable=True) from e
        else:
            raise RunnerError("RunBacktest", spec.id, ValueError(f"backtest {spec.id} already exists"))

        container = None
        succeeded = False
        try:
            self._ensure_image(image)
            self.volumes.ensure_volume(self.shared_data_volume)
            self.volumes.ensure_volume(volume, labels={LABEL_BACKTEST_ID: spec.id})
            self.volumes.write_files(volume, backtest_files(spec))

            options: Dict[str, Any] = {
                "image": image,
                "name": backtest_container_name(spec.id),
                "command": build_backtest_command(spec, self.base_dir),
                "environment": dict(spec.environment),
                "labels": {
                    LABEL_BACKTEST_ID: spec.id,
                    LABEL_TASK_TYPE: TASK_TYPE_BACKTEST,
                    MANAGED_LABEL: "true",
                },
                "mounts": build_backtest_mounts(spec.id, self.shared_data_volume, self.base_dir),
                "network_mode": self.network,
            }
            limits = spec.resource_limits
            if limits.memory_bytes > 0:
                options["mem_limit"] = limits.memory_bytes
            if limits.cpu_quota > 0:
                options["cpu_period"] = limits.cpu_period
                options["cpu_quota"] = limits.cpu_quota_micros()

            container = self.client.containers.create(**options)
            container.start()
            succeeded = True
        except ENGINE_ERRORS as e:
            raise RunnerError("RunBacktest", spec.id, e, retryable=True) from e
        finally:
            if not succeeded:
                self._cleanup(spec.id, container)

        return container.id

    def _cleanup(self, backtest_id: str, container):
        if container is not None:
            try:
                container.remove(force=True)
            except ENGINE_ERRORS as e:
                logger.error(f"Failed to remove container of backtest {backtest_id}: {e}")
        try:
            self.volumes.remove_volume(backtest_volume_name(backtest_id))
        except ENGINE_ERRORS as e:
            logger.error(f"Failed to remove workspace of backtest {backtest_id}: {e}")

    def _status(self, backtest_id: str, container) -> BacktestStatus:
        attrs = container.attrs
        state = attrs.get("State") or {}
        task_status, error = state_mapper.task_status_from_state(state)
        status = BacktestStatus(
            backtest_id=backtest_id,
            status=task_status,
            container_id=container.id,
            created_at=state_mapper.parse_engine_time(attrs.get("Created")),
            started_at=state_mapper.parse_engine_time(state.get("StartedAt")),
            completed_at=state_mapper.parse_engine_time(state.get("FinishedAt")),
            exit_code=state.get("ExitCode") if task_status in (TaskStatus.COMPLETED, TaskStatus.FAILED) else None,
            error_message=error,
        )
        if task_status == TaskStatus.RUNNING:
            try:
                status.usage = state_mapper.resource_usage_from_stats(container.stats(stream=False))
            except ENGINE_ERRORS as e:
                logger.debug(f"Stats unavailable for backtest {backtest_id}: {e}")
        return status

    def get_backtest_status(self, backtest_id: str) -> BacktestStatus:
        container = self._lookup("GetBacktestStatus", backtest_id)
        return self._status(backtest_id, container)

    def _read_from_container(self, container, path: str) -> bytes:
        stream, _ = container.get_archive(path)
        return read_tar_member(stream)

    def get_backtest_result(self, backtest_id: str) -> BacktestResult:
        container = self._lookup("GetBacktestResult", backtest_id)
        status = self._status(backtest_id, container)
        if status.status not in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            raise RunnerError("GetBacktestResult", backtest_id,
                              ValueError(f"backtest is not finished (status: {status.status.value})"))

        result = BacktestResult(
            backtest_id=backtest_id,
            status=status.status,
            exit_code=status.exit_code,
            error_message=status.error_message,
        )
        try:
            result.logs = container.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")
        except ENGINE_ERRORS as e:
            logger.warning(f"Could not read logs of backtest {backtest_id}: {e}")

        if status.status == TaskStatus.COMPLETED:
            results_dir = backtest_results_path(backtest_id, self.base_dir)
            try:
                raw = load_backtest_result(lambda p: self._read_from_container(container, p), results_dir)
            except ENGINE_ERRORS + (ValueError, KeyError, OSError, zipfile.BadZipFile) as e:
                logger.warning(f"Could not load results of backtest {backtest_id}: {e}")
                result.raw_result = {"error": f"failed to read backtest results: {e}"}
            else:
                result.raw_result = raw
                result.summary = extract_summary(raw)
        return result

    def get_backtest_logs(self, backtest_id: str, opts: LogOptions) -> LogReader:
        container = self._lookup("GetBacktestLogs", backtest_id)
        try:
            chunks = container.logs(
                stdout=opts.stream in (None, "stdout"),
                stderr=opts.stream in (None, "stderr"),
                stream=True,
                follow=opts.follow,
                timestamps=opts.timestamps,
                tail=opts.tail if opts.tail else "all",
            )
        except ENGINE_ERRORS as e:
            raise RunnerError("GetBacktestLogs", backtest_id, e, retryable=True) from e
        return LogReader(chunks, stream=opts.stream, timestamps=opts.timestamps)

    def stop_backtest(self, backtest_id: str) -> None:
        container = self._lookup("StopBacktest", backtest_id)
        try:
            container.stop(timeout=self.stop_timeout)
        except ENGINE_ERRORS as e:
            raise RunnerError("StopBacktest", backtest_id, e, retryable=True) from e

    def delete_backtest(self, backtest_id: str) -> None:
        try:
            container = self._find_container(backtest_id)
        except BacktestNotFoundError:
            container = None
        except ENGINE_ERRORS as e:
            raise RunnerError("DeleteBacktest", backtest_id, e, retryable=True) from e

        try:
            if container is not None:
                container.remove(force=True)
            self.volumes.remove_volume(backtest_volume_name(backtest_id))
        except ENGINE_ERRORS as e:
            raise RunnerError("DeleteBacktest", backtest_id, e, retryable=True) from e
        logger.info(f"Deleted backtest {backtest_id}")

    def list_backtests(self) -> List[BacktestStatus]:
        try:
            containers = self.client.containers.list(
                all=True, filters={"label": f"{LABEL_TASK_TYPE}={TASK_TYPE_BACKTEST}"}, ignore_removed=True,
            )
        except ENGINE_ERRORS as e:
            raise RunnerError("ListBacktests", "", e, retryable=True) from e
        statuses = []
        for container in containers:
            backtest_id = container.labels.get(LABEL_BACKTEST_ID)
            if backtest_id:
                statuses.append(self._status(backtest_id, container))
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
