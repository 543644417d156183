"""
Backend registry: runner type tag -> factories.

Built-in backends register themselves the first time a type is resolved.
Each backend provides a config validator and up to three factories; a
missing factory means the backend does not support that component.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .errors import RegistryError
from .interface import BacktestRunner, DataDownloader, Runtime, RunnerType

logger = logging.getLogger(__name__)


@dataclass
class BackendFactories:
    validate: Callable[[Mapping[str, Any]], Any]
    runtime: Optional[Callable[[Any], Runtime]] = None
    backtest_runner: Optional[Callable[[Any], BacktestRunner]] = None
    data_downloader: Optional[Callable[[Any], DataDownloader]] = None


_REGISTRY: Dict[RunnerType, BackendFactories] = {}
_builtins_loaded = False


def register_backend(runner_type: Union[RunnerType, str], factories: BackendFactories) -> None:
    runner_type = RunnerType(runner_type)
    if runner_type in _REGISTRY:
        logger.warning(f"Replacing backend registered for runner type '{runner_type.value}'")
    _REGISTRY[runner_type] = factories


def _load_builtin_backends() -> None:
    global _builtins_loaded
    if _builtins_loaded:
        return
    _builtins_loaded = True

    from ..docker.backend import DOCKER_BACKEND
    from ..local.backend import LOCAL_BACKEND

    _REGISTRY.setdefault(RunnerType.DOCKER, DOCKER_BACKEND)
    _REGISTRY.setdefault(RunnerType.LOCAL, LOCAL_BACKEND)


def resolve_backend(runner_type: Union[RunnerType, str]) -> BackendFactories:
    _load_builtin_backends()
    try:
        key = RunnerType(runner_type)
    except ValueError:
        raise RegistryError(str(runner_type)) from None
    factories = _REGISTRY.get(key)
    if factories is None:
        raise RegistryError(key.value)
    return factories


def backend_config(runner_type: Union[RunnerType, str], config: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """Accept either {"docker": {...}} or the backend's config directly."""
    config = config or {}
    tag = RunnerType(runner_type).value
    nested = config.get(tag)
    if isinstance(nested, Mapping):
        return nested
    return config


def validate_config(runner_type: Union[RunnerType, str], config: Optional[Mapping[str, Any]]) -> Any:
    """Parse and validate a backend config without constructing anything."""
    factories = resolve_backend(runner_type)
    return factories.validate(backend_config(runner_type, config))


def _construct(runner_type, config, component: str):
    factories = resolve_backend(runner_type)
    factory = getattr(factories, component)
    if factory is None:
        raise RegistryError(RunnerType(runner_type).value, component.replace("_", " "))

    parsed = factories.validate(backend_config(runner_type, config))
    instance = factory(parsed)

    health_check = getattr(instance, "health_check", None)
    if health_check is not None:
        try:
            health_check()
        except BaseException:
            logger.error(f"Health check failed for new {component} of type '{RunnerType(runner_type).value}'")
            instance.close()
            raise
    return instance


def create_runtime(runner_type: Union[RunnerType, str], config: Optional[Mapping[str, Any]]) -> Runtime:
    return _construct(runner_type, config, "runtime")


def create_backtest_runner(runner_type: Union[RunnerType, str], config: Optional[Mapping[str, Any]]) -> BacktestRunner:
    return _construct(runner_type, config, "backtest_runner")


def create_data_downloader(runner_type: Union[RunnerType, str], config: Optional[Mapping[str, Any]]) -> DataDownloader:
    return _construct(runner_type, config, "data_downloader")
