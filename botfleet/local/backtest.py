import logging
import os
import shutil
import zipfile
from pathlib import Path
from typing import List, Optional

from ..config.settings import settings
from ..models.backtest import BacktestResult, BacktestSpec, BacktestStatus, TaskStatus
from ..models.bot import LogOptions
from ..runner.config_injection import LocalDirectoryWriter
from ..runner.errors import BacktestNotFoundError, RunnerError
from ..runner.interface import BacktestRunner, RunnerType
from ..runner.logs import LogReader
from ..runner import status as state_mapper
from ..runner.workspace import (
    backtest_data_path, backtest_files, backtest_results_path, backtest_workspace, build_backtest_command,
)
from ..utils.backtest_summary import extract_summary, load_backtest_result
from .config import LocalConfig
from .process import ProcessSupervisor

logger = logging.getLogger(__name__)

RUN_DIR = ".botfleet"


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class LocalBacktestRunner(BacktestRunner):
    """
    Backtests as freqtrade child processes.

    Each backtest gets {base_dir}/backtests/{id} as its user directory; its
    data directory is a symlink to the shared data directory.
    """

    def __init__(self, config: LocalConfig, supervisor: Optional[ProcessSupervisor] = None,
                 stop_timeout: int = settings.STOP_TIMEOUT):
        self.config = config
        self.base_dir = config.backtests_dir
        self.supervisor = supervisor or ProcessSupervisor()
        self.writer = LocalDirectoryWriter(config.backtests_dir)
        self.stop_timeout = stop_timeout

    def _workspace(self, backtest_id: str) -> Path:
        return Path(backtest_workspace(backtest_id, self.base_dir))

    def _run_dir(self, backtest_id: str) -> Path:
        return self._workspace(backtest_id) / RUN_DIR

    def _require(self, operation: str, backtest_id: str) -> Path:
        run_dir = self._run_dir(backtest_id)
        if not run_dir.is_dir():
            raise RunnerError(operation, backtest_id, BacktestNotFoundError(backtest_id))
        return run_dir

    def run_backtest(self, spec: BacktestSpec) -> str:
        workspace = self._workspace(spec.id)
        if workspace.exists():
            raise RunnerError("RunBacktest", spec.id, ValueError(f"backtest {spec.id} already exists"))
        logger.info(f"Starting backtest {spec.id} with strategy {spec.strategy_name} as a local process")

        succeeded = False
        try:
            self.writer.write_files(backtest_files(spec))
            Path(self.config.data_dir).mkdir(parents=True, exist_ok=True)
            os.symlink(self.config.data_dir, backtest_data_path(spec.id, self.base_dir), target_is_directory=True)

            args = [self.config.freqtrade_bin, *build_backtest_command(spec, self.base_dir)]
            pid = self.supervisor.start(self._run_dir(spec.id), args, env=dict(spec.environment), cwd=str(workspace))
            succeeded = True
        except OSError as e:
            raise RunnerError("RunBacktest", spec.id, e, retryable=True) from e
        finally:
            if not succeeded:
                shutil.rmtree(workspace, ignore_errors=True)
        return str(pid)

    def _status(self, backtest_id: str, run_dir: Path) -> BacktestStatus:
        state = self.supervisor.state(run_dir) or {}
        task_status, error = state_mapper.task_status_from_state(state)
        started_at = state_mapper.parse_engine_time(state.get("StartedAt"))
        return BacktestStatus(
            backtest_id=backtest_id,
            status=task_status,
            container_id=str(state.get("Pid") or "") or None,
            created_at=started_at,
            started_at=started_at,
            completed_at=state_mapper.parse_engine_time(state.get("FinishedAt")),
            exit_code=state.get("ExitCode") if task_status in (TaskStatus.COMPLETED, TaskStatus.FAILED) else None,
            error_message=error,
        )

    def get_backtest_status(self, backtest_id: str) -> BacktestStatus:
        run_dir = self._require("GetBacktestStatus", backtest_id)
        return self._status(backtest_id, run_dir)

    def get_backtest_result(self, backtest_id: str) -> BacktestResult:
        run_dir = self._require("GetBacktestResult", backtest_id)
        status = self._status(backtest_id, run_dir)
        if status.status not in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            raise RunnerError("GetBacktestResult", backtest_id,
                              ValueError(f"backtest is not finished (status: {status.status.value})"))

        result = BacktestResult(
            backtest_id=backtest_id,
            status=status.status,
            exit_code=status.exit_code,
            error_message=status.error_message,
        )
        with self.supervisor.logs(run_dir) as reader:
            result.logs = reader.read_all()

        if status.status == TaskStatus.COMPLETED:
            results_dir = backtest_results_path(backtest_id, self.base_dir)
            try:
                raw = load_backtest_result(_read_file, results_dir)
            except (ValueError, KeyError, OSError, zipfile.BadZipFile) as e:
                logger.warning(f"Could not load results of backtest {backtest_id}: {e}")
                result.raw_result = {"error": f"failed to read backtest results: {e}"}
            else:
                result.raw_result = raw
                result.summary = extract_summary(raw)
        return result

    def get_backtest_logs(self, backtest_id: str, opts: LogOptions) -> LogReader:
        run_dir = self._require("GetBacktestLogs", backtest_id)
        return self.supervisor.logs(run_dir, stream=opts.stream, tail=opts.tail, follow=opts.follow)

    def stop_backtest(self, backtest_id: str) -> None:
        run_dir = self._require("StopBacktest", backtest_id)
        try:
            self.supervisor.stop(run_dir, timeout=self.stop_timeout)
        except OSError as e:
            raise RunnerError("StopBacktest", backtest_id, e, retryable=True) from e

    def delete_backtest(self, backtest_id: str) -> None:
        workspace = self._workspace(backtest_id)
        if not workspace.exists():
            return
        self.supervisor.stop(self._run_dir(backtest_id), timeout=self.stop_timeout)
        # the data symlink goes first so the shared directory is never followed
        data_link = Path(backtest_data_path(backtest_id, self.base_dir))
        if data_link.is_symlink():
            data_link.unlink()
        shutil.rmtree(workspace, ignore_errors=True)
        logger.info(f"Deleted backtest {backtest_id}")

    def list_backtests(self) -> List[BacktestStatus]:
        base = Path(self.base_dir)
        if not base.is_dir():
            return []
        return [
            self._status(entry.name, entry / RUN_DIR)
            for entry in sorted(base.iterdir())
            if (entry / RUN_DIR).is_dir()
        ]

    def health_check(self) -> None:
        if shutil.which(self.config.freqtrade_bin) is None:
            raise RunnerError("HealthCheck", "", FileNotFoundError(f"{self.config.freqtrade_bin} not found on PATH"))

    def close(self) -> None:
        pass

    def type(self) -> RunnerType:
        return RunnerType.LOCAL
