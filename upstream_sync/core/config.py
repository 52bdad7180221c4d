"""Configuration for the serverlist refresher.

Provides strongly-typed settings using Pydantic and a loader from environment
variables with defaults suitable for local development.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from upstream_sync.core.durations import parse_duration_ms
from upstream_sync.models.schemas import GroupConfig, ServiceEndpoint

DEFAULT_SERVICE_URL = "http://127.0.0.1:8080/"
DEFAULT_REFRESH_TIMEOUT_MS = 2000
DEFAULT_REFRESH_INTERVAL_MS = 5000
DEFAULT_SERVICE_CONCURRENCY = 1


def parse_service_url(url: str) -> ServiceEndpoint:
    """Split a discovery service URL into host, port and URI.

    Accepts ``http://host[:port][/uri]`` and the local-socket form
    ``http://unix:/path/to.sock[:/uri]``.
    """
    if not url.startswith("http://"):
        raise ValueError(f"only http urls are supported: {url!r}")
    rest = url[len("http://"):]
    if not rest:
        raise ValueError("service url has no host")

    if rest.startswith("unix:"):
        path, sep, uri = rest[len("unix:"):].partition(":")
        if not path:
            raise ValueError(f"no socket path in {url!r}")
        return ServiceEndpoint(host="localhost", uri=uri if sep and uri else "/", unix_path=path)

    hostport, slash, uri = rest.partition("/")
    uri = f"/{uri}" if slash else "/"

    if hostport.startswith("["):
        host, _, tail = hostport[1:].partition("]")
        port_str = tail[1:] if tail.startswith(":") else ""
    elif ":" in hostport:
        host, _, port_str = hostport.rpartition(":")
    else:
        host, port_str = hostport, ""

    if not host:
        raise ValueError(f"service url has no host: {url!r}")
    port = 80
    if port_str:
        if not (port_str.isascii() and port_str.isdigit()) or not 0 < int(port_str) < 65536:
            raise ValueError(f"invalid port in {url!r}")
        port = int(port_str)
    return ServiceEndpoint(host=host, port=port, uri=uri)


def parse_groups(value: str) -> list[GroupConfig]:
    """Parse ``up1,up2=list2`` into group configs."""
    groups: list[GroupConfig] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        upstream, _, serverlist = item.partition("=")
        upstream, serverlist = upstream.strip(), serverlist.strip()
        if not upstream:
            raise ValueError(f"group entry {item!r} has no upstream name")
        groups.append(GroupConfig(upstream=upstream, serverlist=serverlist or upstream))
    return groups


class Settings(BaseModel):
    """Pydantic settings for the refresher."""

    service_url: str = DEFAULT_SERVICE_URL
    request_timeout_ms: int = DEFAULT_REFRESH_TIMEOUT_MS
    refresh_interval_ms: int = DEFAULT_REFRESH_INTERVAL_MS
    concurrency: int = DEFAULT_SERVICE_CONCURRENCY
    conf_dump_dir: Optional[Path] = None
    groups: list[GroupConfig] = []

    @field_validator("service_url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        parse_service_url(v)
        return v

    @field_validator("request_timeout_ms", "refresh_interval_ms", mode="before")
    @classmethod
    def _duration(cls, v):
        if isinstance(v, str):
            v = parse_duration_ms(v)
        if v <= 0:
            raise ValueError("duration must be positive")
        return v

    @field_validator("concurrency")
    @classmethod
    def _check_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("concurrency must be at least 1")
        return v

    @field_validator("conf_dump_dir")
    @classmethod
    def _check_dump_dir(cls, v: Optional[Path]) -> Optional[Path]:
        if v is None:
            return v
        v = v.expanduser().resolve()
        if not v.exists():
            raise ValueError(f"conf dump dir {v} does not exist")
        if not v.is_dir():
            raise ValueError(f"conf dump path {v} is not a dir")
        return v

    @field_validator("groups", mode="before")
    @classmethod
    def _split_groups(cls, v):
        return parse_groups(v) if isinstance(v, str) else v

    @model_validator(mode="after")
    def _unique_serverlists(self) -> "Settings":
        names = [g.serverlist for g in self.groups]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate serverlist names: {', '.join(dupes)}")
        return self

    @property
    def service(self) -> ServiceEndpoint:
        return parse_service_url(self.service_url)

    @property
    def request_timeout_s(self) -> float:
        return self.request_timeout_ms / 1000

    @property
    def refresh_interval_s(self) -> float:
        return self.refresh_interval_ms / 1000


def load_settings() -> Settings:
    """Load settings from environment variables and return a Settings object."""
    try:
        return Settings(
            service_url=os.getenv("SERVERLIST_SERVICE_URL", DEFAULT_SERVICE_URL),
            request_timeout_ms=os.getenv("SERVERLIST_TIMEOUT", str(DEFAULT_REFRESH_TIMEOUT_MS) + "ms"),
            refresh_interval_ms=os.getenv("SERVERLIST_INTERVAL", str(DEFAULT_REFRESH_INTERVAL_MS) + "ms"),
            concurrency=int(os.getenv("SERVERLIST_CONCURRENCY", str(DEFAULT_SERVICE_CONCURRENCY))),
            conf_dump_dir=os.getenv("SERVERLIST_DUMP_DIR") or None,
            groups=os.getenv("SERVERLIST_GROUPS", ""),
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e
