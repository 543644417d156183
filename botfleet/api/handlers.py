import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from fastapi import HTTPException
from pydantic import BaseModel, Field

from ..config.settings import settings
from ..models.backtest import BacktestResult, BacktestSpec, BacktestStatus
from ..models.bot import DEFAULT_API_PORT, BotSpec, BotStatus, LogEntry, LogOptions, UpdateBotSpec
from ..models.download import DataAvailability, DataDownloadSpec, DataDownloadStatus
from ..runner.bot_client import BotAPIClient, BotAPIError, call_with_fallback
from ..runner.download_script import parse_data_availability
from ..runner.errors import RunnerError
from ..runner.interface import BacktestRunner, DataDownloader, Runtime
from ..runner.logs import LogReader

logger = logging.getLogger(__name__)

T = TypeVar("T")

BOT_API_CALLS: Dict[str, Callable[[BotAPIClient], Any]] = {
    "ping": BotAPIClient.ping,
    "profit": BotAPIClient.profit,
    "status": BotAPIClient.status,
    "balance": BotAPIClient.balance,
    "performance": BotAPIClient.performance,
}


class BotCredentials(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    api_port: int = Field(default=DEFAULT_API_PORT, gt=0, lt=65536)


class DownloadLogs(BaseModel):
    task_id: str
    logs: str
    availability: Optional[DataAvailability] = None


def http_error(error: RunnerError) -> HTTPException:
    if error.not_found:
        return HTTPException(status_code=404, detail=str(error))
    if error.retryable:
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _require(component, name: str):
    if component is None:
        raise HTTPException(status_code=501, detail=f"{name} is not available for this runner type")
    return component


class RunnerHandler:
    """
    Async facade over the blocking backends.

    Every backend call runs in a worker thread; RunnerError is translated
    to an HTTP status here and nowhere else.
    """

    def __init__(self, runtime: Optional[Runtime] = None,
                 backtest_runner: Optional[BacktestRunner] = None,
                 downloader: Optional[DataDownloader] = None):
        self.runtime = runtime
        self.backtest_runner = backtest_runner
        self.downloader = downloader

    async def _call(self, fn: Callable[..., T], *args) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except RunnerError as e:
            logger.warning(f"{e} (retryable={e.retryable})")
            raise http_error(e) from e

    # bots

    @property
    def bots(self) -> Runtime:
        return _require(self.runtime, "bot runtime")

    async def create_bot(self, spec: BotSpec) -> str:
        logger.info(f"Creating bot {spec.id} from {spec.image}")
        return await self._call(self.bots.create_bot, spec)

    async def delete_bot(self, bot_id: str) -> None:
        await self._call(self.bots.delete_bot, bot_id)

    async def start_bot(self, bot_id: str) -> None:
        await self._call(self.bots.start_bot, bot_id)

    async def stop_bot(self, bot_id: str) -> None:
        await self._call(self.bots.stop_bot, bot_id)

    async def restart_bot(self, bot_id: str) -> None:
        await self._call(self.bots.restart_bot, bot_id)

    async def get_bot_status(self, bot_id: str) -> BotStatus:
        return await self._call(self.bots.get_bot_status, bot_id)

    async def list_bots(self) -> List[BotStatus]:
        return await self._call(self.bots.list_bots)

    async def update_bot(self, bot_id: str, spec: UpdateBotSpec) -> None:
        await self._call(self.bots.update_bot, bot_id, spec)

    async def get_bot_api_url(self, bot_id: str) -> str:
        return await self._call(self.bots.get_bot_api_url, bot_id)

    async def open_bot_logs(self, bot_id: str, opts: LogOptions) -> LogReader:
        return await self._call(self.bots.get_bot_logs, bot_id, opts)

    async def read_bot_logs(self, bot_id: str, opts: LogOptions) -> List[LogEntry]:
        reader = await self.open_bot_logs(bot_id, opts)
        return await asyncio.to_thread(_drain, reader)

    async def call_bot_api(self, bot_id: str, endpoint: str, credentials: BotCredentials) -> Any:
        call = BOT_API_CALLS.get(endpoint)
        if call is None:
            raise HTTPException(status_code=404, detail=f"unknown bot API endpoint: {endpoint}")
        status = await self.get_bot_status(bot_id)
        try:
            return await asyncio.to_thread(
                call_with_fallback, status, credentials.username, credentials.password, call,
                api_port=credentials.api_port,
                fallback_host=self.bots.host_address(),
                direct_timeout=settings.DIRECT_CONNECT_TIMEOUT,
                timeout=settings.BOT_HTTP_TIMEOUT,
            )
        except BotAPIError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e

    # backtests

    @property
    def backtests(self) -> BacktestRunner:
        return _require(self.backtest_runner, "backtest runner")

    async def run_backtest(self, spec: BacktestSpec) -> str:
        logger.info(f"Starting backtest {spec.id} ({spec.strategy_name})")
        return await self._call(self.backtests.run_backtest, spec)

    async def get_backtest_status(self, backtest_id: str) -> BacktestStatus:
        return await self._call(self.backtests.get_backtest_status, backtest_id)

    async def get_backtest_result(self, backtest_id: str) -> BacktestResult:
        return await self._call(self.backtests.get_backtest_result, backtest_id)

    async def read_backtest_logs(self, backtest_id: str, opts: LogOptions) -> List[LogEntry]:
        reader = await self._call(self.backtests.get_backtest_logs, backtest_id, opts)
        return await asyncio.to_thread(_drain, reader)

    async def stop_backtest(self, backtest_id: str) -> None:
        await self._call(self.backtests.stop_backtest, backtest_id)

    async def delete_backtest(self, backtest_id: str) -> None:
        await self._call(self.backtests.delete_backtest, backtest_id)

    async def list_backtests(self) -> List[BacktestStatus]:
        return await self._call(self.backtests.list_backtests)

    # downloads

    @property
    def downloads(self) -> DataDownloader:
        return _require(self.downloader, "data downloader")

    async def start_download(self, spec: DataDownloadSpec) -> str:
        logger.info(f"Starting data download for runner {spec.runner_id} ({len(spec.exchanges)} exchanges)")
        return await self._call(self.downloads.start_download, spec)

    async def get_download_status(self, task_id: str) -> DataDownloadStatus:
        return await self._call(self.downloads.get_download_status, task_id)

    async def get_download_logs(self, task_id: str) -> DownloadLogs:
        logs = await self._call(self.downloads.get_download_logs, task_id)
        return DownloadLogs(task_id=task_id, logs=logs, availability=parse_data_availability(logs))

    async def cancel_download(self, task_id: str) -> None:
        await self._call(self.downloads.cancel_download, task_id)

    async def publish_download(self, task_id: str) -> None:
        await self._call(self.downloads.publish_download, task_id)

    async def cleanup_download(self, task_id: str) -> None:
        await self._call(self.downloads.cleanup_download, task_id)


def _drain(reader: LogReader) -> List[LogEntry]:
    with reader:
        return list(reader.entries())
