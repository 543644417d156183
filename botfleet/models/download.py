from enum import Enum
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class DownloadState(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


class TradingMode(str, Enum):
    SPOT = "spot"
    FUTURES = "futures"
    MARGIN = "margin"


class ExchangeDownloadConfig(BaseModel):
    name: str = Field(..., min_length=1)
    timeframes: List[str] = Field(..., min_length=1)
    pairs_pattern: str = Field(..., min_length=1, description="freqtrade pair regex, e.g. '.*/USDT'")
    days: int = Field(default=30, gt=0)
    trading_mode: TradingMode = TradingMode.SPOT


class DataDownloadSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    runner_id: str = Field(..., min_length=1)
    image: Optional[str] = None
    exchanges: List[ExchangeDownloadConfig] = Field(..., min_length=1)
    upload_url: str = Field(..., min_length=1, description="Pre-signed URL the archive is PUT to")
    existing_data_url: Optional[str] = None


class DataDownloadStatus(BaseModel):
    task_id: str
    status: DownloadState
    progress: float = 0.0
    current_phase: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# Data availability report, printed by the in-container scanner.
# "from"/"to" are reserved or awkward in Python so they are aliased.

class TimeframeRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timeframe: str
    start: Optional[datetime] = Field(default=None, alias="from")
    end: Optional[datetime] = Field(default=None, alias="to")


class PairAvailability(BaseModel):
    pair: str
    timeframes: List[TimeframeRange] = Field(default_factory=list)


class ExchangeAvailability(BaseModel):
    name: str
    pairs: List[PairAvailability] = Field(default_factory=list)


class DataAvailability(BaseModel):
    exchanges: List[ExchangeAvailability] = Field(default_factory=list)
