"""Application configuration for the symbol cache proxy."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Optional
from urllib.parse import quote, urlparse

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_UPSTREAMS = ["https://msdl.microsoft.com/download/symbols"]


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


@dataclass(frozen=True)
class Upstream:
    """A symbol server consulted on cache miss."""

    name: str
    base_url: str

    def url_for(self, symbol_path: str) -> str:
        return f"{self.base_url}/{quote(symbol_path.lstrip('/'), safe='/')}"


def parse_upstream(entry: str) -> Upstream:
    """Parse ``url`` or ``name=url`` into an :class:`Upstream`."""

    entry = entry.strip()
    name, sep, url = entry.partition("=")
    if not sep or "://" in name:
        name, url = "", entry
    url = url.strip().rstrip("/")
    parsed = urlparse(url)
    try:
        parsed.port
    except ValueError as exc:
        raise ValueError(f"Invalid upstream URL: {entry!r}") from exc
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ValueError(f"Invalid upstream URL: {entry!r}")
    return Upstream(name=name.strip() or parsed.netloc, base_url=url)


class SymbolProxySettings(BaseSettings):
    """Runtime settings for the symbol cache proxy service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    bind_host: str = env_field("0.0.0.0", "SYMCACHE_BIND_HOST")
    bind_port: int = env_field(8080, "SYMCACHE_BIND_PORT")
    cache_root: Path = env_field(Path("./cache"), "SYMCACHE_CACHE_ROOT")
    upstreams: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_UPSTREAMS),
        validation_alias="SYMCACHE_UPSTREAMS",
    )
    chunk_size: int = env_field(16 * 1024, "SYMCACHE_CHUNK_SIZE")
    connect_timeout_seconds: float = env_field(10.0, "SYMCACHE_CONNECT_TIMEOUT")
    read_timeout_seconds: float = env_field(60.0, "SYMCACHE_READ_TIMEOUT")
    idle_timeout_seconds: float = env_field(30.0, "SYMCACHE_IDLE_TIMEOUT")
    max_idle_connections: int = env_field(10, "SYMCACHE_MAX_IDLE_CONNECTIONS")
    metrics_token: Optional[SecretStr] = env_field(None, "SYMCACHE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "SYMCACHE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "SYMCACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "SYMCACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "SYMCACHE_OTEL_SAMPLER_RATIO")

    @field_validator("upstreams", mode="before")
    @classmethod
    def _split_upstreams(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("upstreams")
    @classmethod
    def _validate_upstreams(cls, value: list[str]) -> list[str]:
        for entry in value:
            parse_upstream(entry)
        return value

    @field_validator("chunk_size")
    @classmethod
    def _validate_chunk_size(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("chunk size must be positive")
        return value

    def upstream_descriptors(self) -> tuple[Upstream, ...]:
        return tuple(parse_upstream(entry) for entry in self.upstreams)
