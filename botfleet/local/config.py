import os
from typing import Any, Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..runner.errors import ConfigError


class LocalConfig(BaseModel):
    """Runs freqtrade as child processes of this host. Meant for development."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    base_dir: str = Field(..., alias="baseDir")
    freqtrade_bin: str = Field(default="freqtrade", alias="freqtradeBin")
    python_bin: str = Field(default="python3", alias="pythonBin")
    api_host: str = Field(default="127.0.0.1", alias="apiHost")
    shared_data_dir: str = Field(default="", alias="sharedDataDir")

    @property
    def bots_dir(self) -> str:
        return os.path.join(self.base_dir, "bots")

    @property
    def backtests_dir(self) -> str:
        return os.path.join(self.base_dir, "backtests")

    @property
    def downloads_dir(self) -> str:
        return os.path.join(self.base_dir, "downloads")

    @property
    def data_dir(self) -> str:
        return self.shared_data_dir or os.path.join(self.base_dir, "data")


def parse_local_config(data: Optional[Mapping[str, Any]]) -> LocalConfig:
    if not data:
        raise ConfigError("base_dir is required")
    try:
        config = LocalConfig.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigError(f"failed to parse local config: {e}") from e
    if not config.base_dir:
        raise ConfigError("base_dir is required")
    if not os.path.isabs(config.base_dir):
        raise ConfigError("base_dir must be an absolute path")
    return config
