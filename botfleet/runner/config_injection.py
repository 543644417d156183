"""
Per-bot configuration files written into the shared user-data location.

Layout under the user-data base (same path inside every container):

    {base}/{bot_id}/config.exchange.json
    {base}/{bot_id}/config.strategy.json
    {base}/{bot_id}/config.bot.json
    {base}/{bot_id}/config.secure.json
    {base}/{bot_id}/strategies/{StrategyName}.py

freqtrade merges repeated --config files with later files winning, so the
order of the flags is the precedence order: exchange, strategy, bot, secure.
"""
import copy
import json
import logging
import re
import secrets
import shutil
import string
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from ..models.bot import BotSpec

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY_NAME = "MyStrategy"
LAYER_ORDER = ("exchange", "strategy", "bot", "secure")

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9\s]")


class ConfigFileWriter(Protocol):
    """Where injected files end up: a docker volume, a local directory, ..."""

    def write_files(self, files: Dict[str, bytes]) -> None:
        """Write files keyed by path relative to the user-data base."""
        ...

    def remove_directory(self, relative_path: str) -> None:
        ...


class LocalDirectoryWriter:
    """Writes config files straight into a directory on this host."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)

    def _resolve(self, relative_path: str) -> Path:
        target = (self.base_dir / relative_path).resolve()
        if self.base_dir.resolve() not in target.parents and target != self.base_dir.resolve():
            raise ValueError(f"path escapes base directory: {relative_path}")
        return target

    def write_files(self, files: Dict[str, bytes]) -> None:
        for relative_path, content in files.items():
            target = self._resolve(relative_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)

    def remove_directory(self, relative_path: str) -> None:
        target = self._resolve(relative_path)
        if target == self.base_dir.resolve():
            raise ValueError("refusing to remove the base directory")
        shutil.rmtree(target, ignore_errors=True)


@dataclass
class ConfigFilePaths:
    """In-container paths of the files written for one bot."""
    base_dir: str
    bot_id: str
    layers: Dict[str, str] = field(default_factory=dict)
    strategy_file: Optional[str] = None

    @property
    def user_dir(self) -> str:
        return str(PurePosixPath(self.base_dir) / self.bot_id)

    def config_args(self) -> List[str]:
        args: List[str] = []
        for layer in LAYER_ORDER:
            if layer in self.layers:
                args.extend(["--config", self.layers[layer]])
        return args


def sanitize_strategy_name(name: Optional[str]) -> str:
    """
    Turn a display name into a valid Python class name.

    "RSI Test Strategy" -> "RsiTestStrategy", "myStrat" -> "MyStrat".
    """
    if not name:
        return DEFAULT_STRATEGY_NAME
    cleaned = _INVALID_NAME_CHARS.sub("", name)
    words = cleaned.split()
    if not words:
        return DEFAULT_STRATEGY_NAME
    if len(words) == 1 and cleaned == words[0]:
        return cleaned[0].upper() + cleaned[1:]
    return "".join(w[0].upper() + w[1:].lower() for w in words)


def strategy_filename(name: Optional[str]) -> str:
    return sanitize_strategy_name(name) + ".py"


def bot_environment(spec: BotSpec) -> Dict[str, str]:
    """Variables every bot process sees. Caller-supplied entries win."""
    env = {
        "BOT_IMAGE": spec.image,
        "FREQTRADE_VERSION": spec.freqtrade_version,
        "STRATEGY_NAME": sanitize_strategy_name(spec.strategy_name),
    }
    if spec.data_download_url:
        env["DATA_DOWNLOAD_URL"] = spec.data_download_url
    env.update(spec.environment)
    return env


def merge_config_layers(*layers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Merge config layers the way freqtrade does: later layers win key by key,
    nested dicts are merged recursively.
    """
    merged: Dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
                merged[key] = merge_config_layers(merged[key], value)
            else:
                merged[key] = copy.deepcopy(value)
    return merged


def generate_credential(length: int = 24) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def build_secure_layer(spec: BotSpec) -> Tuple[Dict[str, Any], str, str]:
    """
    Caller's secure config overlaid with the keys the platform must control.

    Returns the layer plus the API credentials it contains.
    """
    username = spec.api_username or generate_credential(12)
    password = spec.api_password or generate_credential()
    forced = {
        "initial_state": "running",
        "api_server": {
            "enabled": True,
            "listen_ip_address": "0.0.0.0",
            "listen_port": spec.api_port,
            "username": username,
            "password": password,
            "enable_openapi": True,
        },
    }
    return merge_config_layers(spec.secure_config, forced), username, password


def build_config_files(spec: BotSpec, base_dir: str) -> Tuple[Dict[str, bytes], ConfigFilePaths]:
    """Render every file for `spec`. Keys are relative to `base_dir`."""
    paths = ConfigFilePaths(base_dir=base_dir, bot_id=spec.id)
    files: Dict[str, bytes] = {}

    secure, _, _ = build_secure_layer(spec)
    layers = {
        "exchange": spec.exchange_config,
        "strategy": spec.strategy_config,
        "bot": spec.bot_config,
        "secure": secure,
    }
    for layer in LAYER_ORDER:
        content = layers[layer]
        if not content:
            continue
        relative = f"{spec.id}/config.{layer}.json"
        files[relative] = json.dumps(content, indent=2, sort_keys=True).encode()
        paths.layers[layer] = str(PurePosixPath(base_dir) / relative)

    if spec.strategy_code:
        relative = f"{spec.id}/strategies/{strategy_filename(spec.strategy_name)}"
        files[relative] = spec.strategy_code.encode()
        paths.strategy_file = str(PurePosixPath(base_dir) / relative)

    return files, paths


def inject_config(writer: ConfigFileWriter, spec: BotSpec, base_dir: str) -> ConfigFilePaths:
    """
    Write all config files for `spec`. On any failure the bot's directory is
    removed before the error propagates, so nothing is left half-written.
    """
    files, paths = build_config_files(spec, base_dir)
    try:
        writer.write_files(files)
    except BaseException:
        logger.warning(f"Config injection failed for bot {spec.id}, rolling back")
        remove_config(writer, spec.id)
        raise

    logger.info(f"Injected {len(files)} config files for bot {spec.id}")
    return paths


def remove_config(writer: ConfigFileWriter, bot_id: str) -> None:
    """Best-effort removal of a bot's config directory."""
    try:
        writer.remove_directory(bot_id)
    except Exception as e:
        logger.error(f"Failed to remove config directory for bot {bot_id}: {e}")
