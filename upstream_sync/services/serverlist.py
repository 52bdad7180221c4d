"""Server-list text protocol.

The discovery service answers with one ``server`` line per backend, in the
same shape as an upstream block::

    server 10.0.0.1:80 weight=2 max_fails=3 fail_timeout=30s;
    server app.internal:8080 backup;

Lines are split into arguments made of ``[A-Za-z0-9=._:-]``; anything else
(spaces, ``;``) separates them. A bad line is logged and dropped, the rest of
the body is still used.
"""
from __future__ import annotations

import ipaddress
import re
import socket
from typing import Callable, Iterable, Optional, Union

from upstream_sync.core.durations import parse_duration_s
from upstream_sync.core.errors import BodyParseFailure
from upstream_sync.core.logging import get_logger
from upstream_sync.models.schemas import Address, ServerDescriptor

log = get_logger("parser")

DEFAULT_PORT = 80

Resolver = Callable[[str, int], tuple[Address, ...]]

_ARG = re.compile(r"[A-Za-z0-9=._:-]+")


def resolve_address(host: str, port: int) -> tuple[Address, ...]:
    """Resolve a host name to every TCP address it maps to.

    IP literals are returned as-is without a lookup. Raises ``ValueError``
    when the name does not resolve.
    """
    try:
        return (Address(host=str(ipaddress.ip_address(host)), port=port),)
    except ValueError:
        pass

    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError as e:
        raise ValueError(f"host not found: {host}") from e

    addrs: list[Address] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        addr = Address(host=sockaddr[0], port=sockaddr[1])
        if addr not in addrs:
            addrs.append(addr)
    if not addrs:
        raise ValueError(f"host not found: {host}")
    return tuple(addrs)


def split_host_port(token: str) -> tuple[str, int]:
    """Split ``host[:port]``; the port defaults to 80."""
    host, port = token, DEFAULT_PORT
    if token.count(":") == 1:
        host, port_str = token.split(":")
        if not (port_str.isascii() and port_str.isdigit()) or not 0 < int(port_str) < 65536:
            raise ValueError(f"invalid port in {token!r}")
        port = int(port_str)
    elif ":" in token:
        # only a bare IPv6 literal may carry several colons
        ipaddress.IPv6Address(token)
    if not host:
        raise ValueError(f"no host in {token!r}")
    return host, port


def _atoi(value: str) -> int:
    if not (value.isascii() and value.isdigit()):
        raise ValueError(value)
    return int(value)


def _parse_line(args: list[str], resolver: Resolver, group: Optional[str]) -> Optional[ServerDescriptor]:
    if args[0] != "server":
        log.error("serverlist %s: expect 'server' prefix, got %r", group, args[0])
        return None
    if len(args) < 2:
        log.error("serverlist %s: 'server' without address", group)
        return None

    try:
        host, port = split_host_port(args[1])
        addrs = resolver(host, port)
    except ValueError as e:
        log.error("serverlist %s: parse addr %s failed: %s", group, args[1], e)
        return None

    fields: dict = {"name": args[1], "addrs": addrs}
    for arg in args[2:]:
        key, sep, value = arg.partition("=")
        try:
            if sep and key == "weight":
                weight = _atoi(value)
                if weight <= 0:
                    raise ValueError(value)
                fields["weight"] = weight
            elif sep and key == "max_conns":
                fields["max_conns"] = _atoi(value)
            elif sep and key == "max_fails":
                fields["max_fails"] = _atoi(value)
            elif sep and key == "fail_timeout":
                fields["fail_timeout"] = parse_duration_s(value)
            elif not sep and arg == "down":
                fields["down"] = True
            elif not sep and arg == "backup":
                fields["backup"] = True
            else:
                log.warning("serverlist %s: unknown server option %s", group, arg)
        except ValueError:
            log.error("serverlist %s: %s invalid: %r", group, key, value)
    return ServerDescriptor(**fields)


def parse_server_list(
    body: Union[str, bytes],
    resolver: Resolver = resolve_address,
    group: Optional[str] = None,
) -> list[ServerDescriptor]:
    """Parse a serverlist body into server descriptors, in body order.

    Raises ``BodyParseFailure`` when no line yields a server.
    """
    if isinstance(body, bytes):
        body = body.decode("latin-1")

    servers: list[ServerDescriptor] = []
    for line in body.split("\n"):
        args = _ARG.findall(line)
        if not args:
            continue
        server = _parse_line(args, resolver, group)
        if server is not None:
            servers.append(server)

    if not servers:
        raise BodyParseFailure(f"parse serverlist {group} failed: no valid server", group)
    return servers


def format_server_line(s: ServerDescriptor) -> str:
    """Render one descriptor the way snapshot files store it."""
    line = f"server {s.name} weight={s.weight} max_fails={s.max_fails} fail_timeout={s.fail_timeout}s"
    if s.max_conns:
        line += f" max_conns={s.max_conns}"
    if s.down:
        line += " down"
    if s.backup:
        line += " backup"
    return line + ";"


def serialize_servers(servers: Iterable[ServerDescriptor]) -> str:
    """Render a whole server set, one newline-terminated line per server."""
    return "".join(format_server_line(s) + "\n" for s in servers)
