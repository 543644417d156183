import logging
import os
import shutil
import tempfile
from typing import Optional

import docker
import requests
from docker.errors import DockerException
from docker.tls import TLSConfig

from ..runner.errors import RunnerError
from .config import DockerConfig

logger = logging.getLogger(__name__)

# Pinned so building a client never talks to the daemon; health_check does.
DEFAULT_API_VERSION = "1.41"

# failures talking to the daemon, as opposed to lookups that found nothing
ENGINE_ERRORS = (DockerException, requests.exceptions.RequestException)


class DockerConnection:
    """
    Owns the docker SDK client for one backend instance.

    The SDK only accepts TLS material as files, so PEM contents from the
    config are written to a private temp directory that lives as long as
    the connection.
    """

    def __init__(self, config: DockerConfig, timeout: int = 60):
        self.config = config
        self._tls_dir: Optional[str] = None

        try:
            tls = self._tls_config() if config.tls_verify else False
            self.client = docker.DockerClient(
                base_url=config.host,
                version=config.api_version or DEFAULT_API_VERSION,
                tls=tls,
                timeout=timeout,
            )
        except (DockerException, OSError) as e:
            self._remove_tls_dir()
            raise RunnerError("connect", "", e, retryable=True) from e

        logger.info(f"Docker client configured for {config.host} (tls={config.tls_verify})")

    def _write_private(self, name: str, content: str) -> str:
        path = os.path.join(self._tls_dir, name)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(content)
        return path

    def _tls_config(self) -> TLSConfig:
        self._tls_dir = tempfile.mkdtemp(prefix="botfleet-tls-")
        cert = self._write_private("cert.pem", self.config.cert_pem)
        key = self._write_private("key.pem", self.config.key_pem)
        ca = self._write_private("ca.pem", self.config.ca_pem)
        return TLSConfig(client_cert=(cert, key), ca_cert=ca, verify=True)

    def _remove_tls_dir(self):
        if self._tls_dir:
            shutil.rmtree(self._tls_dir, ignore_errors=True)
            self._tls_dir = None

    def ping(self) -> None:
        try:
            self.client.ping()
        except ENGINE_ERRORS as e:
            raise RunnerError("HealthCheck", "", e, retryable=True) from e

    def close(self) -> None:
        try:
            self.client.close()
        finally:
            self._remove_tls_dir()
