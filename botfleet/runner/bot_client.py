import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

import httpx

from ..models.bot import DEFAULT_API_PORT, BotStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BotAPIError(Exception):
    pass


class BotAPIClient:
    """Thin client for a bot's freqtrade REST API (basic auth)."""

    def __init__(self, base_url: str, username: str, password: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(base_url=self.base_url, auth=(username, password), timeout=timeout)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.client.close()

    def _get(self, path: str) -> Any:
        response = self.client.get(f"/api/v1/{path}")
        if response.status_code != 200:
            raise BotAPIError(f"GET {path} returned HTTP {response.status_code}")
        return response.json()

    def ping(self) -> Dict[str, Any]:
        return self._get("ping")

    def profit(self) -> Dict[str, Any]:
        return self._get("profit")

    def status(self) -> List[Dict[str, Any]]:
        """Open trades."""
        return self._get("status")

    def balance(self) -> Dict[str, Any]:
        return self._get("balance")

    def performance(self) -> List[Dict[str, Any]]:
        return self._get("performance")


def api_credentials(secure_config: Mapping[str, Any]) -> Tuple[str, str, int]:
    """Username, password and port of the api_server section of a secure config."""
    api_server = secure_config.get("api_server") or {}
    username = api_server.get("username")
    password = api_server.get("password")
    if not username or not password:
        raise BotAPIError("api_server has no credentials")
    return username, password, int(api_server.get("listen_port") or DEFAULT_API_PORT)


def call_with_fallback(status: BotStatus, username: str, password: str,
                       call: Callable[[BotAPIClient], T],
                       api_port: int = DEFAULT_API_PORT,
                       fallback_host: str = "localhost",
                       direct_timeout: float = 2.0,
                       timeout: float = 30.0) -> T:
    """
    Reach a bot by its own network address first, then via the host port.

    The direct address only works when this process shares the bot's
    network, so it gets a short timeout before falling back.
    """
    last_error: Optional[Exception] = None

    if status.ip_address:
        url = f"http://{status.ip_address}:{api_port}"
        try:
            with BotAPIClient(url, username, password, timeout=direct_timeout) as client:
                return call(client)
        except (httpx.HTTPError, BotAPIError) as e:
            logger.info(f"Bot {status.bot_id}: direct address {url} failed, trying host port: {e}")
            last_error = e

    if status.host_port:
        url = f"http://{fallback_host}:{status.host_port}"
        try:
            with BotAPIClient(url, username, password, timeout=timeout) as client:
                return call(client)
        except (httpx.HTTPError, BotAPIError) as e:
            raise BotAPIError(f"bot {status.bot_id} unreachable via direct address and {url}: {e}") from e

    raise BotAPIError(
        f"no accessible endpoint for bot {status.bot_id}: "
        f"ip={status.ip_address}, host_port={status.host_port}"
    ) from last_error
