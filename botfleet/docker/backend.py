from ..runner.registry import BackendFactories
from .backtest import DockerBacktestRunner
from .config import parse_docker_config
from .data_downloader import DockerDataDownloader
from .runtime import DockerRuntime

DOCKER_BACKEND = BackendFactories(
    validate=parse_docker_config,
    runtime=DockerRuntime,
    backtest_runner=DockerBacktestRunner,
    data_downloader=DockerDataDownloader,
)
