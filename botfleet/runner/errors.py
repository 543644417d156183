from typing import Optional


class BotNotFoundError(Exception):
    """No container/process could be found for the requested bot."""

    def __init__(self, bot_id: str = ""):
        super().__init__(f"bot not found: {bot_id}" if bot_id else "bot not found")
        self.bot_id = bot_id


class BacktestNotFoundError(Exception):

    def __init__(self, backtest_id: str = ""):
        super().__init__(f"backtest not found: {backtest_id}" if backtest_id else "backtest not found")
        self.backtest_id = backtest_id


class DownloadNotFoundError(Exception):

    def __init__(self, task_id: str = ""):
        super().__init__(f"download task not found: {task_id}" if task_id else "download task not found")
        self.task_id = task_id


NOT_FOUND_CAUSES = (BotNotFoundError, BacktestNotFoundError, DownloadNotFoundError)


class RunnerError(Exception):
    """
    The one error shape every backend raises.

    `retryable` is advisory: backends never retry on their own, callers
    decide. Lookup failures are never retryable; backend/daemon failures are.
    """

    def __init__(self, operation: str, bot_id: str, cause: BaseException, retryable: bool = False):
        self.operation = operation
        self.bot_id = bot_id
        self.cause = cause
        self.retryable = retryable
        super().__init__(str(self))

    def __str__(self):
        if self.bot_id:
            return f"runtime {self.operation} failed for bot {self.bot_id}: {self.cause}"
        return f"runtime {self.operation} failed: {self.cause}"

    @property
    def not_found(self) -> bool:
        return isinstance(self.cause, NOT_FOUND_CAUSES)


class ConfigError(ValueError):
    """Backend configuration is invalid. Fatal, raised before construction."""


class RegistryError(Exception):
    """No usable backend is registered for the requested runner type."""

    def __init__(self, runner_type: str, component: Optional[str] = None):
        self.runner_type = runner_type
        self.component = component
        if component:
            msg = f"runner type '{runner_type}' does not provide a {component}"
        else:
            msg = f"no backend registered for runner type '{runner_type}'"
        super().__init__(msg)


def wrap_error(operation: str, bot_id: str, cause: BaseException, retryable: bool = True) -> RunnerError:
    """Wrap `cause` unless it already is a RunnerError."""
    if isinstance(cause, RunnerError):
        return cause
    return RunnerError(operation, bot_id, cause, retryable=retryable)
