from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Tuple

import httpx

from ..models.bot import BotSpec, BotStatus, LogOptions, UpdateBotSpec
from ..models.backtest import BacktestResult, BacktestSpec, BacktestStatus
from ..models.download import DataDownloadSpec, DataDownloadStatus
from .logs import LogReader


class RunnerType(str, Enum):
    DOCKER = "docker"
    KUBERNETES = "kubernetes"
    LOCAL = "local"


class Runtime(ABC):
    """
    Lifecycle contract every bot backend implements.

    Calls are synchronous and may block on the backend. Failures are raised
    as RunnerError; nothing is cached between calls, the backend is the
    source of truth.
    """

    @abstractmethod
    def create_bot(self, spec: BotSpec) -> str:
        """
        Provision and start a bot.

        Returns the backend's handle for the workload (container ID, pid...).
        On failure nothing the call created is left behind.
        """
        raise NotImplementedError

    @abstractmethod
    def delete_bot(self, bot_id: str) -> None:
        """Stop and remove the bot together with its injected config."""
        raise NotImplementedError

    @abstractmethod
    def start_bot(self, bot_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def stop_bot(self, bot_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def restart_bot(self, bot_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_bot_status(self, bot_id: str) -> BotStatus:
        raise NotImplementedError

    @abstractmethod
    def get_container_ip(self, bot_id: str) -> str:
        raise NotImplementedError

    def host_address(self) -> str:
        """Host that published bot ports are reachable on from this process."""
        return "localhost"

    @abstractmethod
    def get_bot_api_url(self, bot_id: str) -> str:
        """Base URL of the bot's API as reachable from the backend's host."""
        raise NotImplementedError

    @abstractmethod
    def get_bot_http_client(self, bot_id: str) -> Tuple[httpx.Client, str]:
        """An HTTP client for the bot's API and the base URL it targets."""
        raise NotImplementedError

    @abstractmethod
    def get_bot_logs(self, bot_id: str, opts: LogOptions) -> LogReader:
        """Caller owns the reader and must close it."""
        raise NotImplementedError

    @abstractmethod
    def update_bot(self, bot_id: str, spec: UpdateBotSpec) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_bots(self) -> List[BotStatus]:
        raise NotImplementedError

    @abstractmethod
    def health_check(self) -> None:
        """Raise RunnerError when the backend is unreachable."""
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def type(self) -> RunnerType:
        raise NotImplementedError


class BacktestRunner(ABC):
    """One-shot backtest executions, isolated per backtest ID."""

    @abstractmethod
    def run_backtest(self, spec: BacktestSpec) -> str:
        """Start a backtest and return its container/process handle."""
        raise NotImplementedError

    @abstractmethod
    def get_backtest_status(self, backtest_id: str) -> BacktestStatus:
        raise NotImplementedError

    @abstractmethod
    def get_backtest_result(self, backtest_id: str) -> BacktestResult:
        raise NotImplementedError

    @abstractmethod
    def get_backtest_logs(self, backtest_id: str, opts: LogOptions) -> LogReader:
        raise NotImplementedError

    @abstractmethod
    def stop_backtest(self, backtest_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_backtest(self, backtest_id: str) -> None:
        """Remove the run and its private workspace. Shared data is untouched."""
        raise NotImplementedError

    @abstractmethod
    def list_backtests(self) -> List[BacktestStatus]:
        raise NotImplementedError

    @abstractmethod
    def health_check(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def type(self) -> RunnerType:
        raise NotImplementedError


class DataDownloader(ABC):
    """Ephemeral jobs that fetch historical data and upload it as an archive."""

    @abstractmethod
    def start_download(self, spec: DataDownloadSpec) -> str:
        """Start a download and return its task ID."""
        raise NotImplementedError

    @abstractmethod
    def get_download_status(self, task_id: str) -> DataDownloadStatus:
        raise NotImplementedError

    @abstractmethod
    def get_download_logs(self, task_id: str) -> str:
        """stdout followed by stderr, so availability markers stay contiguous."""
        raise NotImplementedError

    @abstractmethod
    def cancel_download(self, task_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def publish_download(self, task_id: str) -> None:
        """
        Copy a completed task's data into the shared dataset backtests read.

        Downloads write only to their own scratch data directory until this
        is called.
        """
        raise NotImplementedError

    @abstractmethod
    def cleanup_download(self, task_id: str) -> None:
        raise NotImplementedError

    def health_check(self) -> None:
        pass

    def close(self) -> None:
        pass
