from typing import Any, Dict

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    LOG_DIR: str = "logs"
    LOG_FILE: str = "botfleet.log"
    LOG_LEVEL: str = "INFO"

    # backend selection, RUNNER_CONFIG may be nested under the type tag
    RUNNER_TYPE: str = "docker"
    RUNNER_CONFIG: Dict[str, Any] = {"host": "unix:///var/run/docker.sock"}

    DEFAULT_BOT_IMAGE: str = "freqtradeorg/freqtrade:stable"
    USER_DATA_DIR: str = "/freqtrade/user_data"
    BOT_CONFIG_VOLUME: str = "botfleet-bot-configs"
    SHARED_DATA_VOLUME: str = "botfleet-freqtrade-data"
    HELPER_IMAGE: str = "alpine:latest"

    STOP_TIMEOUT: int = 30
    DIRECT_CONNECT_TIMEOUT: float = 2.0
    BOT_HTTP_TIMEOUT: float = 30.0
    MAX_REQUEST_TIME: int = 120
    MAX_REQUEST_SIZE_MB: int = 2

    class Config:
        env_file = ".env"
        env_prefix = "BOTFLEET_"


settings = Settings()
