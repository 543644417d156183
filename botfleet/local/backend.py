from ..runner.registry import BackendFactories
from .backtest import LocalBacktestRunner
from .config import parse_local_config
from .data_downloader import LocalDataDownloader
from .runtime import LocalRuntime

LOCAL_BACKEND = BackendFactories(
    validate=parse_local_config,
    runtime=LocalRuntime,
    backtest_runner=LocalBacktestRunner,
    data_downloader=LocalDataDownloader,
)
