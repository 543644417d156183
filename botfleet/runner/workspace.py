"""
Per-backtest workspace layout.

Each backtest owns {base}/{backtest_id}: configs, strategy, results and logs
live there and nowhere else. The shared candle data is mounted read-only at
{workspace}/data. freqtrade derives its data directory from --userdir, so
--datadir is never passed.
"""
import json
from pathlib import PurePosixPath
from typing import Any, Dict, List

from ..models.backtest import BacktestSpec
from .config_injection import merge_config_layers, sanitize_strategy_name, strategy_filename
from .download_script import DEFAULT_USER_DATA_DIR

RESULTS_DIR = "backtest_results"
LAST_RESULT_FILE = ".last_result.json"


def backtest_workspace(backtest_id: str, base_dir: str = DEFAULT_USER_DATA_DIR) -> str:
    return str(PurePosixPath(base_dir) / backtest_id)


def backtest_data_path(backtest_id: str, base_dir: str = DEFAULT_USER_DATA_DIR) -> str:
    return str(PurePosixPath(backtest_workspace(backtest_id, base_dir)) / "data")


def backtest_results_path(backtest_id: str, base_dir: str = DEFAULT_USER_DATA_DIR) -> str:
    return str(PurePosixPath(backtest_workspace(backtest_id, base_dir)) / RESULTS_DIR)


def backtest_config(spec: BacktestSpec) -> Dict[str, Any]:
    """Strategy config overlaid by the backtest config. Always dry-run."""
    return merge_config_layers(spec.strategy_config, spec.backtest_config, {"dry_run": True})


def backtest_files(spec: BacktestSpec) -> Dict[str, bytes]:
    """Files to place in the workspace, keyed relative to the user-data base."""
    return {
        f"{spec.id}/config.json": json.dumps(backtest_config(spec), indent=2, sort_keys=True).encode(),
        f"{spec.id}/strategies/{strategy_filename(spec.strategy_name)}": spec.strategy_code.encode(),
    }


def build_backtest_command(spec: BacktestSpec, base_dir: str = DEFAULT_USER_DATA_DIR) -> List[str]:
    workspace = backtest_workspace(spec.id, base_dir)
    return [
        "backtesting",
        "--config", f"{workspace}/config.json",
        "--strategy", sanitize_strategy_name(spec.strategy_name),
        "--userdir", workspace,
        "--data-format-ohlcv", "json",
    ]
