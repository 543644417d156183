import json
import logging
import os
import shutil
import tarfile
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..config.settings import settings
from ..models.bot import BotSpec, BotState, BotStatus, LogOptions, UpdateBotSpec
from ..runner.config_injection import (
    LocalDirectoryWriter, bot_environment, inject_config, remove_config, sanitize_strategy_name,
)
from ..runner.errors import BotNotFoundError, RunnerError
from ..runner.interface import Runtime, RunnerType
from ..runner.logs import LogReader
from ..runner import status as state_mapper
from .config import LocalConfig
from .process import ProcessSupervisor

logger = logging.getLogger(__name__)

RUN_DIR = ".botfleet"
META_FILE = "meta.json"


def fetch_data_bundle(url: str, target_dir: Path, timeout: float = 300.0) -> None:
    """Download a tar.gz data bundle and unpack it into `target_dir`."""
    target_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryFile() as buffer:
        with httpx.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()
            for chunk in response.iter_bytes():
                buffer.write(chunk)
        buffer.seek(0)
        with tarfile.open(fileobj=buffer, mode="r:gz") as archive:
            archive.extractall(target_dir, filter="data")


class LocalRuntime(Runtime):
    """
    Runs each bot as a freqtrade child process on this host.

    {base_dir}/bots/{bot_id} is the bot's user-data directory and holds its
    config files; process bookkeeping lives in its .botfleet subdirectory.
    There is no network isolation: every bot listens on its own api_port on
    the host and callers must pick distinct ports.
    """

    def __init__(self, config: LocalConfig, supervisor: Optional[ProcessSupervisor] = None,
                 stop_timeout: int = settings.STOP_TIMEOUT,
                 http_timeout: float = settings.BOT_HTTP_TIMEOUT):
        self.config = config
        self.bots_dir = Path(config.bots_dir)
        self.supervisor = supervisor or ProcessSupervisor()
        self.config_writer = LocalDirectoryWriter(config.bots_dir)
        self.stop_timeout = stop_timeout
        self.http_timeout = http_timeout

    def _bot_dir(self, bot_id: str) -> Path:
        return self.bots_dir / bot_id

    def _run_dir(self, bot_id: str) -> Path:
        return self._bot_dir(bot_id) / RUN_DIR

    def _meta(self, operation: str, bot_id: str) -> Dict[str, Any]:
        meta_file = self._run_dir(bot_id) / META_FILE
        try:
            return json.loads(meta_file.read_text())
        except FileNotFoundError as e:
            raise RunnerError(operation, bot_id, BotNotFoundError(bot_id)) from e
        except ValueError as e:
            raise RunnerError(operation, bot_id, e) from e

    def _write_meta(self, spec: BotSpec, args: List[str], env: Dict[str, str]):
        meta = {
            "id": spec.id,
            "name": spec.name,
            "api_port": spec.api_port,
            "args": args,
            "environment": env,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.config_writer.write_files({
            f"{spec.id}/{RUN_DIR}/{META_FILE}": json.dumps(meta, indent=2).encode(),
        })

    def _start_process(self, bot_id: str, meta: Dict[str, Any]) -> int:
        return self.supervisor.start(
            self._run_dir(bot_id), meta["args"], env=meta.get("environment"), cwd=str(self._bot_dir(bot_id)),
        )

    def create_bot(self, spec: BotSpec) -> str:
        if self._bot_dir(spec.id).exists():
            raise RunnerError("CreateBot", spec.id, ValueError(f"bot {spec.id} already exists"))
        logger.info(f"Creating bot {spec.id} ({spec.name}) as a local process")

        succeeded = False
        try:
            paths = inject_config(self.config_writer, spec, str(self.bots_dir))
            if spec.data_download_url:
                fetch_data_bundle(spec.data_download_url, Path(paths.user_dir) / "data")

            args = [
                self.config.freqtrade_bin, "trade",
                *paths.config_args(),
                "--strategy", sanitize_strategy_name(spec.strategy_name),
                "--userdir", paths.user_dir,
            ]
            env = bot_environment(spec)
            self._write_meta(spec, args, env)
            pid = self.supervisor.start(self._run_dir(spec.id), args, env=env, cwd=paths.user_dir)
            succeeded = True
        except RunnerError as e:
            raise RunnerError("CreateBot", spec.id, e.cause, retryable=e.retryable) from e
        except httpx.HTTPError as e:
            raise RunnerError("CreateBot", spec.id, e, retryable=True) from e
        except (OSError, tarfile.TarError, ValueError) as e:
            raise RunnerError("CreateBot", spec.id, e) from e
        finally:
            if not succeeded:
                logger.warning(f"Rolling back partially created bot {spec.id}")
                self.supervisor.stop(self._run_dir(spec.id), timeout=self.stop_timeout)
                remove_config(self.config_writer, spec.id)

        logger.info(f"Bot {spec.id} started as process {pid}")
        return str(pid)

    def delete_bot(self, bot_id: str) -> None:
        self._meta("DeleteBot", bot_id)
        self.supervisor.stop(self._run_dir(bot_id), timeout=self.stop_timeout)
        remove_config(self.config_writer, bot_id)
        logger.info(f"Deleted bot {bot_id}")

    def start_bot(self, bot_id: str) -> None:
        meta = self._meta("StartBot", bot_id)
        if self.supervisor.is_running(self._run_dir(bot_id)):
            return
        try:
            self._start_process(bot_id, meta)
        except OSError as e:
            raise RunnerError("StartBot", bot_id, e, retryable=True) from e

    def stop_bot(self, bot_id: str) -> None:
        self._meta("StopBot", bot_id)
        try:
            self.supervisor.stop(self._run_dir(bot_id), timeout=self.stop_timeout)
        except OSError as e:
            raise RunnerError("StopBot", bot_id, e, retryable=True) from e

    def restart_bot(self, bot_id: str) -> None:
        meta = self._meta("RestartBot", bot_id)
        try:
            self.supervisor.stop(self._run_dir(bot_id), timeout=self.stop_timeout)
            self._start_process(bot_id, meta)
        except OSError as e:
            raise RunnerError("RestartBot", bot_id, e, retryable=True) from e

    def _status(self, bot_id: str, meta: Dict[str, Any]) -> BotStatus:
        state = self.supervisor.state(self._run_dir(bot_id))
        started_at = state_mapper.parse_engine_time((state or {}).get("StartedAt"))
        status = BotStatus(
            bot_id=bot_id,
            status=state_mapper.map_container_state(state),
            container_id=str((state or {}).get("Pid") or "") or None,
            healthy=state_mapper.is_healthy(state),
            created_at=state_mapper.parse_engine_time(meta.get("created_at")),
            started_at=started_at,
            last_seen_at=started_at,
            stopped_at=state_mapper.parse_engine_time((state or {}).get("FinishedAt")),
            error_message=state_mapper.exit_error_message(state),
            ip_address=self.config.api_host,
            host_port=meta.get("api_port"),
        )
        if state and state.get("Status") == "created":
            status.status = BotState.CREATING
        return status

    def get_bot_status(self, bot_id: str) -> BotStatus:
        return self._status(bot_id, self._meta("GetBotStatus", bot_id))

    def get_container_ip(self, bot_id: str) -> str:
        self._meta("GetContainerIP", bot_id)
        return self.config.api_host

    def host_address(self) -> str:
        return self.config.api_host

    def get_bot_api_url(self, bot_id: str) -> str:
        meta = self._meta("GetBotAPIURL", bot_id)
        return f"http://{self.host_address()}:{meta['api_port']}"

    def get_bot_http_client(self, bot_id: str) -> Tuple[httpx.Client, str]:
        url = self.get_bot_api_url(bot_id)
        return httpx.Client(base_url=url, timeout=self.http_timeout), url

    def get_bot_logs(self, bot_id: str, opts: LogOptions) -> LogReader:
        self._meta("GetBotLogs", bot_id)
        return self.supervisor.logs(self._run_dir(bot_id), stream=opts.stream, tail=opts.tail, follow=opts.follow)

    def update_bot(self, bot_id: str, spec: UpdateBotSpec) -> None:
        self._meta("UpdateBot", bot_id)
        raise RunnerError("UpdateBot", bot_id,
                          NotImplementedError("local processes cannot be updated - please recreate the bot"))

    def list_bots(self) -> List[BotStatus]:
        if not self.bots_dir.is_dir():
            return []
        statuses = []
        for entry in sorted(self.bots_dir.iterdir()):
            meta_file = entry / RUN_DIR / META_FILE
            if not meta_file.is_file():
                continue
            try:
                statuses.append(self._status(entry.name, json.loads(meta_file.read_text())))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping bot {entry.name}, could not read its state: {e}")
        return statuses

    def health_check(self) -> None:
        if shutil.which(self.config.freqtrade_bin) is None:
            raise RunnerError("HealthCheck", "", FileNotFoundError(f"{self.config.freqtrade_bin} not found on PATH"))
        try:
            self.bots_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RunnerError("HealthCheck", "", e) from e
        if not os.access(self.bots_dir, os.W_OK):
            raise RunnerError("HealthCheck", "", PermissionError(f"{self.bots_dir} is not writable"))

    def close(self) -> None:
        pass

    def type(self) -> RunnerType:
        return RunnerType.LOCAL
