import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from ..config.logging_config import setup_logging
from ..config.settings import settings

# Configure logging before importing application modules that use it
setup_logging(settings.LOG_FILE, settings.LOG_LEVEL, settings.LOG_DIR)
logger = logging.getLogger(__name__)

from fastapi import FastAPI  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from .handlers import RunnerHandler  # noqa: E402
from .middleware import TimeoutMiddleware, RequestSizeLimitMiddleware  # noqa: E402
from .routes import router  # noqa: E402
from ..runner import registry  # noqa: E402
from ..runner.interface import BacktestRunner, DataDownloader, Runtime  # noqa: E402


def create_app(runtime: Optional[Runtime] = None,
               backtest_runner: Optional[BacktestRunner] = None,
               downloader: Optional[DataDownloader] = None) -> FastAPI:
    """
    Components that are not passed in are built from RUNNER_TYPE and
    RUNNER_CONFIG on startup and closed on shutdown. A backend that cannot be
    configured or reached aborts startup.
    """
    handler = RunnerHandler(runtime, backtest_runner, downloader)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = []
        runner_type, config = settings.RUNNER_TYPE, settings.RUNNER_CONFIG
        try:
            if handler.runtime is None:
                handler.runtime = await asyncio.to_thread(registry.create_runtime, runner_type, config)
                owned.append(handler.runtime)
            if handler.backtest_runner is None:
                handler.backtest_runner = await asyncio.to_thread(registry.create_backtest_runner, runner_type, config)
                owned.append(handler.backtest_runner)
            if handler.downloader is None:
                handler.downloader = await asyncio.to_thread(registry.create_data_downloader, runner_type, config)
                owned.append(handler.downloader)
            logger.info(f"Runner backend '{runner_type}' ready")
            yield
        finally:
            for component in owned:
                try:
                    component.close()
                except Exception as e:
                    logger.error(f"Error closing {type(component).__name__}: {e}")

    app = FastAPI(title="Botfleet Runtime API", version="1.0.0", lifespan=lifespan)
    app.state.handler = handler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=['*'],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # custom
    app.add_middleware(TimeoutMiddleware, timeout_seconds=settings.MAX_REQUEST_TIME)
    app.add_middleware(RequestSizeLimitMiddleware, max_size_mb=settings.MAX_REQUEST_SIZE_MB)

    app.include_router(router)

    @app.get("/health")
    async def health_check():
        checks = {}
        for name, component in (("runtime", handler.runtime),
                                ("backtest_runner", handler.backtest_runner),
                                ("data_downloader", handler.downloader)):
            check = getattr(component, "health_check", None)
            if check is None:
                continue
            try:
                await asyncio.to_thread(check)
                checks[name] = "ok"
            except Exception as e:
                checks[name] = str(e)
        healthy = all(v == "ok" for v in checks.values())
        return {"status": "healthy" if healthy else "degraded", "checks": checks}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
