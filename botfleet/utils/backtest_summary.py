import io
import json
import zipfile
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, Mapping, Optional

from ..models.backtest import BacktestSummary

FREQTRADE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _number(data: Mapping[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _time(data: Mapping[str, Any], key: str) -> Optional[datetime]:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.strptime(value, FREQTRADE_TIME_FORMAT)
    except ValueError:
        return None


def extract_summary(result: Mapping[str, Any]) -> Optional[BacktestSummary]:
    """
    Typed summary of a freqtrade backtest result.

    Uses the first entry under "strategy". Returns None if there is none.
    """
    strategies = result.get("strategy")
    if not isinstance(strategies, Mapping) or not strategies:
        return None

    name, data = next(iter(strategies.items()))
    if not isinstance(data, Mapping):
        return None

    days = _number(data, "backtest_days")
    return BacktestSummary(
        strategy_name=name,
        total_trades=int(_number(data, "total_trades") or 0),
        wins=int(_number(data, "wins") or 0),
        losses=int(_number(data, "losses") or 0),
        profit_total_abs=_number(data, "profit_total_abs") or 0.0,
        profit_total=_number(data, "profit_total") or 0.0,
        stake_currency=data.get("stake_currency") or "",
        profit_mean=_number(data, "profit_mean"),
        winrate=_number(data, "winrate"),
        max_drawdown=_number(data, "max_drawdown"),
        profit_factor=_number(data, "profit_factor"),
        expectancy=_number(data, "expectancy"),
        sharpe=_number(data, "sharpe"),
        sortino=_number(data, "sortino"),
        calmar=_number(data, "calmar"),
        avg_stake_amount=_number(data, "avg_stake_amount"),
        backtest_start=_time(data, "backtest_start"),
        backtest_end=_time(data, "backtest_end"),
        backtest_days=int(days) if days and days > 0 else None,
    )


def load_backtest_result(read_file: Callable[[str], bytes], results_dir: str) -> Dict[str, Any]:
    """
    Load the latest backtest result from a freqtrade results directory.

    `read_file` returns a file's bytes given its absolute path. freqtrade
    records the latest archive in .last_result.json; the archive holds a JSON
    file with the same stem.
    """
    results = PurePosixPath(results_dir)
    last_result = json.loads(read_file(str(results / ".last_result.json")))
    latest = last_result.get("latest_backtest")
    if not latest:
        raise ValueError("no latest_backtest in .last_result.json")

    archive = read_file(str(results / latest))
    if not latest.endswith(".zip"):
        return json.loads(archive)

    member = PurePosixPath(latest).with_suffix(".json").name
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        with zf.open(member) as f:
            return json.load(f)
