import logging
import time
from typing import Dict, Optional

from docker.errors import ImageNotFound, NotFound
from docker.types import Mount

from ..config.settings import settings
from ..models.backtest import TaskStatus
from ..models.download import DataDownloadSpec, DataDownloadStatus, DownloadState
from ..runner.download_script import build_download_script, parse_download_phase
from ..runner.errors import DownloadNotFoundError, RunnerError
from ..runner.interface import DataDownloader
from ..runner import status as state_mapper
from .client import ENGINE_ERRORS, DockerConnection
from .config import DockerConfig
from .volume import MANAGED_LABEL, VolumeHelper

logger = logging.getLogger(__name__)

DOWNLOAD_PREFIX = "botfleet-data-download-"
LABEL_RUNNER_ID = "botfleet.runner.id"
LABEL_COMPONENT = "botfleet.component"
LABEL_DATA_VOLUME = "botfleet.download.volume"
COMPONENT_DATA_DOWNLOAD = "data-download"
LOG_TAIL = 500
CANCEL_TIMEOUT = 10

_TASK_TO_DOWNLOAD = {
    TaskStatus.PENDING: DownloadState.PENDING,
    TaskStatus.RUNNING: DownloadState.DOWNLOADING,
    TaskStatus.COMPLETED: DownloadState.COMPLETED,
    TaskStatus.FAILED: DownloadState.FAILED,
}


def download_volume_name(container_name: str) -> str:
    return f"{container_name}-data"


class DockerDataDownloader(DataDownloader):
    """
    One self-terminating container per download.

    Each download writes into its own data volume; the shared dataset is only
    touched by publish_download, after the task completed. Containers are not
    auto-removed so logs, which carry the availability report, can be read
    after exit; cleanup_download removes the container and its volume.
    """

    def __init__(self, config: DockerConfig, client=None,
                 user_data_dir: str = settings.USER_DATA_DIR,
                 shared_data_volume: Optional[str] = settings.SHARED_DATA_VOLUME,
                 default_image: str = settings.DEFAULT_BOT_IMAGE):
        self.config = config
        self.connection: Optional[DockerConnection] = None
        if client is None:
            self.connection = DockerConnection(config)
            client = self.connection.client
        self.client = client
        self.network = config.network or "bridge"
        self.user_data_dir = user_data_dir
        self.shared_data_volume = shared_data_volume
        self.default_image = default_image
        self.volumes = VolumeHelper(client, image=settings.HELPER_IMAGE)

    def _ensure_image(self, image: str):
        try:
            self.client.images.get(image)
        except ImageNotFound:
            logger.info(f"Pulling image {image}")
            auth = self.config.registry_auth.auth_config() if self.config.registry_auth else None
            self.client.images.pull(image, auth_config=auth)

    def _container(self, operation: str, task_id: str):
        try:
            return self.client.containers.get(task_id)
        except NotFound as e:
            raise RunnerError(operation, task_id, DownloadNotFoundError(task_id), retryable=False) from e
        except ENGINE_ERRORS as e:
            raise RunnerError(operation, task_id, e, retryable=True) from e

    def start_download(self, spec: DataDownloadSpec) -> str:
        image = spec.image or self.default_image
        name = f"{DOWNLOAD_PREFIX}{spec.runner_id}-{time.time_ns()}"
        script = build_download_script(spec, user_data_dir=self.user_data_dir)

        environment: Dict[str, str] = {"UPLOAD_URL": spec.upload_url}
        if spec.existing_data_url:
            environment["EXISTING_DATA_URL"] = spec.existing_data_url

        volume = download_volume_name(name)
        labels = {
            MANAGED_LABEL: "true",
            LABEL_RUNNER_ID: spec.runner_id,
            LABEL_COMPONENT: COMPONENT_DATA_DOWNLOAD,
        }

        container = None
        volume_created = False
        try:
            self._ensure_image(image)
            self.volumes.ensure_volume(volume, labels={LABEL_RUNNER_ID: spec.runner_id})
            volume_created = True
            container = self.client.containers.create(
                image,
                name=name,
                entrypoint=["/bin/sh", "-c"],
                command=[script],
                environment=environment,
                labels={**labels, LABEL_DATA_VOLUME: volume},
                mounts=[Mount(target=f"{self.user_data_dir}/data", source=volume, type="volume")],
                network_mode=self.network,
            )
            container.start()
        except ENGINE_ERRORS as e:
            self._remove(name, container, volume if volume_created else None)
            raise RunnerError("StartDownload", spec.runner_id, e, retryable=True) from e

        logger.info(f"Started data download container {container.short_id} (runner: {spec.runner_id})")
        return container.id

    def _remove(self, name: str, container, volume: Optional[str]):
        if container is not None:
            try:
                container.remove(force=True)
            except ENGINE_ERRORS as e:
                logger.error(f"Failed to remove download container {name}: {e}")
        if volume is not None:
            try:
                self.volumes.remove_volume(volume)
            except ENGINE_ERRORS as e:
                logger.error(f"Failed to remove data volume {volume}: {e}")

    def get_download_status(self, task_id: str) -> DataDownloadStatus:
        container = self._container("GetDownloadStatus", task_id)
        state = container.attrs.get("State") or {}
        task_status, error = state_mapper.task_status_from_state(state)
        download_state = _TASK_TO_DOWNLOAD[task_status]

        status = DataDownloadStatus(
            task_id=task_id,
            status=download_state,
            current_phase=download_state.value,
            error_message=error,
            started_at=state_mapper.parse_engine_time(state.get("StartedAt")),
        )
        if download_state in (DownloadState.COMPLETED, DownloadState.FAILED):
            status.completed_at = state_mapper.parse_engine_time(state.get("FinishedAt"))
        if download_state == DownloadState.COMPLETED:
            status.progress = 100.0
        elif download_state == DownloadState.DOWNLOADING:
            try:
                tail = container.logs(stdout=True, stderr=False, tail=50).decode("utf-8", errors="replace")
            except ENGINE_ERRORS as e:
                logger.debug(f"Could not read progress of download {task_id}: {e}")
                tail = ""
            phase = parse_download_phase(tail)
            if phase is not None:
                status.progress, status.current_phase = phase
        return status

    def get_download_logs(self, task_id: str) -> str:
        container = self._container("GetDownloadLogs", task_id)
        try:
            stdout = container.logs(stdout=True, stderr=False, tail=LOG_TAIL)
            stderr = container.logs(stdout=False, stderr=True, tail=LOG_TAIL)
        except ENGINE_ERRORS as e:
            raise RunnerError("GetDownloadLogs", task_id, e, retryable=True) from e
        return stdout.decode("utf-8", errors="replace") + stderr.decode("utf-8", errors="replace")

    def cancel_download(self, task_id: str) -> None:
        container = self._container("CancelDownload", task_id)
        try:
            container.stop(timeout=CANCEL_TIMEOUT)
        except ENGINE_ERRORS as e:
            raise RunnerError("CancelDownload", task_id, e, retryable=True) from e
        logger.info(f"Cancelled data download {task_id}")

    def publish_download(self, task_id: str) -> None:
        container = self._container("PublishDownload", task_id)
        task_status, _ = state_mapper.task_status_from_state(container.attrs.get("State") or {})
        if task_status != TaskStatus.COMPLETED:
            raise RunnerError("PublishDownload", task_id,
                              ValueError(f"download is not completed (status: {_TASK_TO_DOWNLOAD[task_status].value})"))
        if not self.shared_data_volume:
            raise RunnerError("PublishDownload", task_id, ValueError("no shared data volume configured"))
        volume = container.labels.get(LABEL_DATA_VOLUME)
        if not volume:
            raise RunnerError("PublishDownload", task_id, ValueError("download has no data volume"))

        try:
            self.volumes.ensure_volume(self.shared_data_volume)
            self.volumes.copy_volume(volume, self.shared_data_volume)
        except ENGINE_ERRORS as e:
            raise RunnerError("PublishDownload", task_id, e, retryable=True) from e
        logger.info(f"Published data of download {task_id} to {self.shared_data_volume}")

    def cleanup_download(self, task_id: str) -> None:
        container = self._container("CleanupDownload", task_id)
        try:
            container.remove(force=True)
            volume = container.labels.get(LABEL_DATA_VOLUME)
            if volume:
                self.volumes.remove_volume(volume)
        except ENGINE_ERRORS as e:
            raise RunnerError("CleanupDownload", task_id, e, retryable=True) from e

    def health_check(self) -> None:
        try:
            self.client.ping()
        except ENGINE_ERRORS as e:
            raise RunnerError("HealthCheck", "", e, retryable=True) from e

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()
