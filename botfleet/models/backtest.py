from enum import Enum
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .bot import ResourceLimits, ResourceUsage


class TaskStatus(str, Enum):
    """Lifecycle of a one-shot container (backtest or data download)."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BacktestSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    image: Optional[str] = None
    freqtrade_version: str = "stable"
    strategy_name: str = Field(..., min_length=1)
    strategy_code: str = Field(..., min_length=1)
    strategy_config: Dict[str, Any] = Field(default_factory=dict)
    backtest_config: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, str] = Field(default_factory=dict)
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)

    @field_validator('id')
    def validate_id(cls, v):
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("backtest id must not contain path separators")
        return v


class BacktestStatus(BaseModel):
    backtest_id: str
    status: TaskStatus
    container_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    usage: ResourceUsage = Field(default_factory=ResourceUsage)


class BacktestSummary(BaseModel):
    strategy_name: str
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    profit_total_abs: float = 0.0
    profit_total: float = 0.0
    stake_currency: str = ""
    profit_mean: Optional[float] = None
    winrate: Optional[float] = None
    max_drawdown: Optional[float] = None
    profit_factor: Optional[float] = None
    expectancy: Optional[float] = None
    sharpe: Optional[float] = None
    sortino: Optional[float] = None
    calmar: Optional[float] = None
    avg_stake_amount: Optional[float] = None
    backtest_start: Optional[datetime] = None
    backtest_end: Optional[datetime] = None
    backtest_days: Optional[int] = None


class BacktestResult(BaseModel):
    backtest_id: str
    status: TaskStatus
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    logs: str = ""
    raw_result: Optional[Dict[str, Any]] = None
    summary: Optional[BacktestSummary] = None
