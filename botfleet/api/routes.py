from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from ..models.backtest import BacktestResult, BacktestSpec, BacktestStatus
from ..models.bot import BotSpec, BotStatus, LogEntry, LogOptions, UpdateBotSpec
from ..models.download import DataDownloadSpec, DataDownloadStatus
from .handlers import BotCredentials, DownloadLogs, RunnerHandler


router = APIRouter(prefix="/api/v1")


def get_handler(request: Request) -> RunnerHandler:
    return request.app.state.handler


def log_options(
    follow: bool = False,
    tail: Optional[int] = Query(default=None, ge=0),
    timestamps: bool = False,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    stream: Optional[str] = Query(default=None, pattern="^(stdout|stderr)$"),
) -> LogOptions:
    return LogOptions(follow=follow, tail=tail, timestamps=timestamps, since=since, until=until, stream=stream)


# bots

@router.post("/bots", status_code=201)
async def create_bot(spec: BotSpec, handler: RunnerHandler = Depends(get_handler)):
    """
    Provision and start a bot.

    The four config layers are written as separate files and passed to
    freqtrade in order exchange, strategy, bot, secure.
    """
    container_id = await handler.create_bot(spec)
    return {"bot_id": spec.id, "container_id": container_id}


@router.get("/bots", response_model=List[BotStatus])
async def list_bots(handler: RunnerHandler = Depends(get_handler)):
    return await handler.list_bots()


@router.get("/bots/{bot_id}", response_model=BotStatus)
async def get_bot(bot_id: str, handler: RunnerHandler = Depends(get_handler)):
    return await handler.get_bot_status(bot_id)


@router.patch("/bots/{bot_id}", status_code=204)
async def update_bot(bot_id: str, spec: UpdateBotSpec, handler: RunnerHandler = Depends(get_handler)):
    await handler.update_bot(bot_id, spec)


@router.delete("/bots/{bot_id}", status_code=204)
async def delete_bot(bot_id: str, handler: RunnerHandler = Depends(get_handler)):
    await handler.delete_bot(bot_id)


@router.post("/bots/{bot_id}/start", status_code=204)
async def start_bot(bot_id: str, handler: RunnerHandler = Depends(get_handler)):
    await handler.start_bot(bot_id)


@router.post("/bots/{bot_id}/stop", status_code=204)
async def stop_bot(bot_id: str, handler: RunnerHandler = Depends(get_handler)):
    await handler.stop_bot(bot_id)


@router.post("/bots/{bot_id}/restart", status_code=204)
async def restart_bot(bot_id: str, handler: RunnerHandler = Depends(get_handler)):
    await handler.restart_bot(bot_id)


@router.get("/bots/{bot_id}/api-url")
async def get_bot_api_url(bot_id: str, handler: RunnerHandler = Depends(get_handler)):
    return {"bot_id": bot_id, "url": await handler.get_bot_api_url(bot_id)}


@router.get("/bots/{bot_id}/logs", response_model=List[LogEntry])
async def get_bot_logs(bot_id: str, opts: LogOptions = Depends(log_options),
                       handler: RunnerHandler = Depends(get_handler)):
    """With follow=true the log is streamed as plain text until the bot exits."""
    if opts.follow:
        reader = await handler.open_bot_logs(bot_id, opts)

        def stream():
            with reader:
                for line in reader.lines():
                    yield line + "\n"

        return StreamingResponse(stream(), media_type="text/plain")
    return await handler.read_bot_logs(bot_id, opts)


@router.post("/bots/{bot_id}/api/{endpoint}")
async def call_bot_api(bot_id: str, endpoint: str, credentials: BotCredentials,
                       handler: RunnerHandler = Depends(get_handler)) -> Any:
    """Proxy a read-only call (ping, profit, status, balance, performance) to the bot's API."""
    return await handler.call_bot_api(bot_id, endpoint, credentials)


# backtests

@router.post("/backtests", status_code=201)
async def run_backtest(spec: BacktestSpec, handler: RunnerHandler = Depends(get_handler)):
    container_id = await handler.run_backtest(spec)
    return {"backtest_id": spec.id, "container_id": container_id}


@router.get("/backtests", response_model=List[BacktestStatus])
async def list_backtests(handler: RunnerHandler = Depends(get_handler)):
    return await handler.list_backtests()


@router.get("/backtests/{backtest_id}", response_model=BacktestStatus)
async def get_backtest(backtest_id: str, handler: RunnerHandler = Depends(get_handler)):
    return await handler.get_backtest_status(backtest_id)


@router.get("/backtests/{backtest_id}/result", response_model=BacktestResult)
async def get_backtest_result(backtest_id: str, handler: RunnerHandler = Depends(get_handler)):
    return await handler.get_backtest_result(backtest_id)


@router.get("/backtests/{backtest_id}/logs", response_model=List[LogEntry])
async def get_backtest_logs(backtest_id: str, tail: Optional[int] = Query(default=None, ge=0),
                            timestamps: bool = False,
                            handler: RunnerHandler = Depends(get_handler)):
    return await handler.read_backtest_logs(backtest_id, LogOptions(tail=tail, timestamps=timestamps))


@router.post("/backtests/{backtest_id}/stop", status_code=204)
async def stop_backtest(backtest_id: str, handler: RunnerHandler = Depends(get_handler)):
    await handler.stop_backtest(backtest_id)


@router.delete("/backtests/{backtest_id}", status_code=204)
async def delete_backtest(backtest_id: str, handler: RunnerHandler = Depends(get_handler)):
    await handler.delete_backtest(backtest_id)


# data downloads

@router.post("/downloads", status_code=201)
async def start_download(spec: DataDownloadSpec, handler: RunnerHandler = Depends(get_handler)):
    task_id = await handler.start_download(spec)
    return {"task_id": task_id}


@router.get("/downloads/{task_id}", response_model=DataDownloadStatus)
async def get_download(task_id: str, handler: RunnerHandler = Depends(get_handler)):
    return await handler.get_download_status(task_id)


@router.get("/downloads/{task_id}/logs", response_model=DownloadLogs)
async def get_download_logs(task_id: str, handler: RunnerHandler = Depends(get_handler)):
    """Raw logs plus the data availability report, once the scan has printed it."""
    return await handler.get_download_logs(task_id)


@router.post("/downloads/{task_id}/cancel", status_code=204)
async def cancel_download(task_id: str, handler: RunnerHandler = Depends(get_handler)):
    await handler.cancel_download(task_id)


@router.post("/downloads/{task_id}/publish", status_code=204)
async def publish_download(task_id: str, handler: RunnerHandler = Depends(get_handler)):
    """Copy a completed download into the shared dataset backtests read."""
    await handler.publish_download(task_id)


@router.delete("/downloads/{task_id}", status_code=204)
async def cleanup_download(task_id: str, handler: RunnerHandler = Depends(get_handler)):
    await handler.cleanup_download(task_id)
