from typing import Any, Dict, Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..runner.errors import ConfigError


class RegistryAuth(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    username: str = ""
    password: str = ""
    server_address: str = Field(default="", alias="serverAddress")

    def auth_config(self) -> Dict[str, str]:
        """Credentials in the shape the engine's pull endpoint expects."""
        auth = {"username": self.username, "password": self.password}
        if self.server_address:
            auth["serveraddress"] = self.server_address
        return auth


class DockerConfig(BaseModel):
    """
    Connection settings for one Docker daemon.

    TLS material is carried as PEM contents, not file paths, so a config can
    be stored and shipped as plain JSON.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    host: str = ""
    tls_verify: bool = Field(default=False, alias="tlsVerify")
    cert_pem: str = Field(default="", alias="certPEM")
    key_pem: str = Field(default="", alias="keyPEM")
    ca_pem: str = Field(default="", alias="caPEM")
    api_version: str = Field(default="", alias="apiVersion")
    network: str = ""
    registry_auth: Optional[RegistryAuth] = Field(default=None, alias="registryAuth")

    def to_map(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_defaults=True)

    def api_host(self) -> str:
        return extract_docker_host(self.host)


def validate_docker_config(config: DockerConfig) -> None:
    if not config.host:
        raise ConfigError("host is required")

    if config.tls_verify:
        if not config.cert_pem:
            raise ConfigError("cert_pem is required when tls_verify is enabled")
        if not config.key_pem:
            raise ConfigError("key_pem is required when tls_verify is enabled")
        if not config.ca_pem:
            raise ConfigError("ca_pem is required when tls_verify is enabled")

    if config.registry_auth is not None:
        if not config.registry_auth.username:
            raise ConfigError("registry_auth.username is required when registry_auth is provided")
        if not config.registry_auth.password:
            raise ConfigError("registry_auth.password is required when registry_auth is provided")


def parse_docker_config(data: Optional[Mapping[str, Any]]) -> DockerConfig:
    if data is None:
        raise ConfigError("config data is required")
    try:
        config = DockerConfig.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigError(f"failed to parse Docker config: {e}") from e

    validate_docker_config(config)
    return config


def extract_docker_host(host_url: str) -> str:
    """
    Hostname clients use to reach ports published by the daemon.

    tcp://10.0.0.5:2376 -> 10.0.0.5, unix:///var/run/docker.sock -> localhost
    """
    for scheme in ("tcp://", "https://", "http://"):
        if host_url.startswith(scheme):
            host = host_url[len(scheme):].split("/", 1)[0]
            if host.startswith("["):
                return host[:host.index("]") + 1]
            idx = host.rfind(":")
            return host[:idx] if idx > 0 else host
    if host_url.startswith(("unix://", "npipe://")) or not host_url:
        return "localhost"
    return host_url
