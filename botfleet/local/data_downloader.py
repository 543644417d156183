import json
import logging
import os
import shutil
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Dict, Optional

from ..models.backtest import TaskStatus
from ..models.download import DataDownloadSpec, DataDownloadStatus, DownloadState
from ..runner.download_script import build_download_script, parse_download_phase
from ..runner.errors import DownloadNotFoundError, RunnerError
from ..runner.interface import DataDownloader
from ..runner import status as state_mapper
from .config import LocalConfig
from .process import STDOUT_FILE, ProcessSupervisor

logger = logging.getLogger(__name__)

RUN_DIR = ".botfleet"
META_FILE = "meta.json"
LOG_TAIL = 500
CANCEL_TIMEOUT = 10

_TASK_TO_DOWNLOAD = {
    TaskStatus.PENDING: DownloadState.PENDING,
    TaskStatus.RUNNING: DownloadState.DOWNLOADING,
    TaskStatus.COMPLETED: DownloadState.COMPLETED,
    TaskStatus.FAILED: DownloadState.FAILED,
}


def publish_tree(source: Path, target: Path) -> int:
    """
    Copy every file under `source` into `target`, replacing existing files.

    Files are copied under a temporary name and renamed into place, so
    readers of `target` never see a partial file. Returns the file count.
    """
    copied = 0
    for root, _, files in os.walk(source):
        dest_dir = target / Path(root).relative_to(source)
        dest_dir.mkdir(parents=True, exist_ok=True)
        for name in files:
            partial = dest_dir / f"{name}.partial"
            shutil.copy2(Path(root) / name, partial)
            os.replace(partial, dest_dir / name)
            copied += 1
    return copied


class LocalDataDownloader(DataDownloader):
    """
    Runs the download script with the host shell.

    Every task has its own directory under {base_dir}/downloads holding a
    scratch area and a private user-data directory. Nothing reaches the
    shared data directory until publish_download.
    """

    def __init__(self, config: LocalConfig, supervisor: Optional[ProcessSupervisor] = None):
        self.config = config
        self.downloads_dir = Path(config.downloads_dir)
        self.supervisor = supervisor or ProcessSupervisor()

    def _task_dir(self, operation: str, task_id: str) -> Path:
        task_dir = self.downloads_dir / task_id
        if "/" in task_id or task_id in ("", ".", "..") or not (task_dir / RUN_DIR).is_dir():
            raise RunnerError(operation, task_id, DownloadNotFoundError(task_id))
        return task_dir

    def start_download(self, spec: DataDownloadSpec) -> str:
        task_id = f"{spec.runner_id}-{uuid.uuid4().hex[:12]}".replace("/", "-")
        task_dir = self.downloads_dir / task_id
        user_data = task_dir / "user_data"
        work_dir = task_dir / "work"

        env: Dict[str, str] = {"UPLOAD_URL": spec.upload_url}
        if spec.existing_data_url:
            env["EXISTING_DATA_URL"] = spec.existing_data_url

        script = build_download_script(
            spec,
            user_data_dir=str(user_data),
            freqtrade_bin=self.config.freqtrade_bin,
            python_bin=self.config.python_bin,
            work_dir=str(work_dir),
        )

        succeeded = False
        try:
            (user_data / "data").mkdir(parents=True)
            run_dir = task_dir / RUN_DIR
            run_dir.mkdir()
            (run_dir / META_FILE).write_text(json.dumps({"task_id": task_id, "runner_id": spec.runner_id}))
            self.supervisor.start(run_dir, ["/bin/sh", "-c", script], env=env, cwd=str(task_dir))
            succeeded = True
        except OSError as e:
            raise RunnerError("StartDownload", spec.runner_id, e, retryable=True) from e
        finally:
            if not succeeded:
                self._remove(task_dir)

        logger.info(f"Started data download {task_id} (runner: {spec.runner_id})")
        return task_id

    def _remove(self, task_dir: Path):
        shutil.rmtree(task_dir, ignore_errors=True)

    def _stdout_tail(self, run_dir: Path, lines: int) -> str:
        try:
            with open(run_dir / STDOUT_FILE, "rb") as f:
                tail = deque(f, maxlen=lines)
        except FileNotFoundError:
            return ""
        return b"".join(tail).decode("utf-8", errors="replace")

    def get_download_status(self, task_id: str) -> DataDownloadStatus:
        run_dir = self._task_dir("GetDownloadStatus", task_id) / RUN_DIR
        state: Dict[str, Any] = self.supervisor.state(run_dir) or {}
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
            phase = parse_download_phase(self._stdout_tail(run_dir, 50))
            if phase is not None:
                status.progress, status.current_phase = phase
        return status

    def get_download_logs(self, task_id: str) -> str:
        run_dir = self._task_dir("GetDownloadLogs", task_id) / RUN_DIR
        with self.supervisor.logs(run_dir, tail=LOG_TAIL) as reader:
            return reader.read_all()

    def cancel_download(self, task_id: str) -> None:
        run_dir = self._task_dir("CancelDownload", task_id) / RUN_DIR
        try:
            self.supervisor.stop(run_dir, timeout=CANCEL_TIMEOUT)
        except OSError as e:
            raise RunnerError("CancelDownload", task_id, e, retryable=True) from e
        logger.info(f"Cancelled data download {task_id}")

    def publish_download(self, task_id: str) -> None:
        task_dir = self._task_dir("PublishDownload", task_id)
        state = self.supervisor.state(task_dir / RUN_DIR) or {}
        task_status, _ = state_mapper.task_status_from_state(state)
        if task_status != TaskStatus.COMPLETED:
            raise RunnerError("PublishDownload", task_id,
                              ValueError(f"download is not completed (status: {_TASK_TO_DOWNLOAD[task_status].value})"))
        try:
            copied = publish_tree(task_dir / "user_data" / "data", Path(self.config.data_dir))
        except OSError as e:
            raise RunnerError("PublishDownload", task_id, e, retryable=True) from e
        logger.info(f"Published {copied} files of download {task_id} to {self.config.data_dir}")

    def cleanup_download(self, task_id: str) -> None:
        task_dir = self._task_dir("CleanupDownload", task_id)
        self.supervisor.stop(task_dir / RUN_DIR, timeout=CANCEL_TIMEOUT)
        self._remove(task_dir)

    def health_check(self) -> None:
        for binary in (self.config.freqtrade_bin, self.config.python_bin):
            if shutil.which(binary) is None:
                raise RunnerError("HealthCheck", "", FileNotFoundError(f"{binary} not found on PATH"))
