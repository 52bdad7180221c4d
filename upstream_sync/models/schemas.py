"""Pydantic models shared by the refresher, the status API and the mock service."""
from __future__ import annotations

import ipaddress
from collections import Counter
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Address(BaseModel):
    """One resolved socket address of a server."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int

    @property
    def name(self) -> str:
        """Textual form, ``ip:port`` or ``[ip6]:port``."""
        try:
            if ipaddress.ip_address(self.host).version == 6:
                return f"[{self.host}]:{self.port}"
        except ValueError:
            pass
        return f"{self.host}:{self.port}"


class ServerDescriptor(BaseModel):
    """A ``server`` line of a serverlist, with its resolved addresses."""

    model_config = ConfigDict(frozen=True)

    name: str
    addrs: tuple[Address, ...]
    weight: int = Field(default=1, ge=1)
    max_fails: int = Field(default=1, ge=0)
    fail_timeout: int = Field(default=10, ge=0)  # seconds
    max_conns: int = Field(default=0, ge=0)  # 0 = unlimited
    down: bool = False
    backup: bool = False

    def matches(self, other: "ServerDescriptor") -> bool:
        """Field-wise equality; addresses compare as multisets, not positionally."""
        if (
            self.name != other.name
            or self.weight != other.weight
            or len(self.addrs) != len(other.addrs)
            or self.max_conns != other.max_conns
            or self.max_fails != other.max_fails
            or self.fail_timeout != other.fail_timeout
            or self.backup != other.backup
            or self.down != other.down
        ):
            return False
        return Counter(self.addrs) == Counter(other.addrs)


class ServiceEndpoint(BaseModel):
    """Where the discovery service lives, split out of its URL."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = 80
    uri: str = "/"
    unix_path: Optional[str] = None

    @property
    def host_header(self) -> str:
        """Value of the Host header sent with every request."""
        if self.unix_path:
            return "localhost"
        return self.host if self.port == 80 else f"{self.host}:{self.port}"

    @property
    def display(self) -> str:
        return f"unix:{self.unix_path}" if self.unix_path else f"{self.host}:{self.port}"


class GroupConfig(BaseModel):
    """An upstream group and the serverlist name it is refreshed from."""

    model_config = ConfigDict(frozen=True)

    upstream: str
    serverlist: str


class GroupStatus(BaseModel):
    """Summary of one group, returned by ``GET /upstreams``."""

    upstream: str
    serverlist: str
    generation: int
    servers: int
    etag: Optional[str] = None
    last_modified: Optional[str] = None


class GroupDetail(GroupStatus):
    """Full view of one group, including its server lines."""

    lines: list[str]
    peers: int
    backup_peers: int
