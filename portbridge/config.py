from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ConfigError

DEFAULT_LOCAL_HOST = "0.0.0.0"
DEFAULT_CHUNK_SIZE = 65536
DEFAULT_BACKLOG = 200
LOG_LEVELS = ["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]


def host_port(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"{host}:{port}"


def split_host_port(address: str) -> tuple[str, int]:
    host, sep, port_s = address.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"address must be host:port, got {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ConfigError(f"IPv6 hosts must be bracketed, got {address!r}")
    try:
        port = int(port_s)
    except ValueError:
        raise ConfigError(f"invalid port in {address!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"port out of range in {address!r}")
    return host, port


class PortPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    local_address: str
    remote_address: str

    @field_validator("local_address", "remote_address")
    @classmethod
    def _parseable(cls, value: str) -> str:
        split_host_port(value)
        return value

    @classmethod
    def for_port(cls, local_host: str, remote_host: str, port: int) -> "PortPair":
        return cls(
            local_address=host_port(local_host, port),
            remote_address=host_port(remote_host, port),
        )

    def __str__(self) -> str:
        return f"{self.local_address} -> {self.remote_address}"


class ProxyConfig(BaseModel):
    local_host: str = DEFAULT_LOCAL_HOST
    remote_host: str
    ports: list[int] = Field(min_length=1)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    backlog: int = Field(default=DEFAULT_BACKLOG, gt=0)
    connect_timeout: float | None = Field(default=None, gt=0)
    status_host: str = "127.0.0.1"
    status_port: int | None = Field(default=None, ge=0, le=65535)
    log_level: str = "INFO"

    @field_validator("local_host", "remote_host")
    @classmethod
    def _host_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("host must not be empty")
        return value

    @field_validator("ports")
    @classmethod
    def _valid_ports(cls, ports: list[int]) -> list[int]:
        for port in ports:
            if not 1 <= port <= 65535:
                raise ValueError(f"port {port} out of range 1-65535")
        if len(set(ports)) != len(ports):
            raise ValueError("ports must be unique")
        return ports

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(LOG_LEVELS)}")
        return value

    def pairs(self) -> list[PortPair]:
        return [PortPair.for_port(self.local_host, self.remote_host, port) for port in self.ports]
