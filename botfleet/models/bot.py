from enum import Enum
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_API_PORT = 8080
DEFAULT_CPU_PERIOD = 100_000


class BotState(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"
    ERROR = "error"


class ResourceLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    memory_bytes: int = Field(default=0, ge=0, description="Hard memory limit, 0 means unlimited")
    cpu_quota: float = Field(default=0.0, ge=0, description="Fraction of cores, e.g. 1.5")
    cpu_period: int = Field(default=DEFAULT_CPU_PERIOD, gt=0, description="CFS period in microseconds")

    def cpu_quota_micros(self) -> int:
        """Absolute CFS quota derived from the fractional core count."""
        return int(self.cpu_period * self.cpu_quota)


class BotSpec(BaseModel):
    """
    Everything a backend needs to provision one trading bot.

    The four config layers are written as separate files and handed to
    freqtrade in order (exchange, strategy, bot, secure); later layers win.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    image: str = Field(..., min_length=1)
    freqtrade_version: str = "stable"

    strategy_name: str = Field(..., min_length=1)
    strategy_code: str = ""

    exchange_config: Dict[str, Any] = Field(default_factory=dict)
    strategy_config: Dict[str, Any] = Field(default_factory=dict)
    bot_config: Dict[str, Any] = Field(default_factory=dict)
    secure_config: Dict[str, Any] = Field(default_factory=dict)

    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    network_mode: Optional[str] = None
    api_port: int = Field(default=DEFAULT_API_PORT, gt=0, lt=65536)
    api_username: Optional[str] = None
    api_password: Optional[str] = None
    environment: Dict[str, str] = Field(default_factory=dict)
    data_download_url: Optional[str] = None

    @field_validator('id')
    def validate_id(cls, v):
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("bot id must not contain path separators")
        return v


class ResourceUsage(BaseModel):
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0
    block_read_bytes: int = 0
    block_write_bytes: int = 0


class BotStatus(BaseModel):
    bot_id: str
    status: BotState
    container_id: Optional[str] = None
    healthy: bool = False
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    error_message: Optional[str] = None
    ip_address: Optional[str] = None
    host_port: Optional[int] = None
    usage: ResourceUsage = Field(default_factory=ResourceUsage)


class UpdateBotSpec(BaseModel):
    image: Optional[str] = None
    resource_limits: Optional[ResourceLimits] = None
    environment: Optional[Dict[str, str]] = None


class LogOptions(BaseModel):
    follow: bool = False
    tail: Optional[int] = Field(default=None, ge=0)
    timestamps: bool = False
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    stream: Optional[str] = Field(default=None, pattern="^(stdout|stderr)$")


class LogEntry(BaseModel):
    timestamp: Optional[datetime] = None
    stream: Optional[str] = None
    message: str
