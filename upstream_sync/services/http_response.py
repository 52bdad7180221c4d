"""Conditional GET requests and incremental parsing of their responses.

Only what the discovery protocol needs is supported: a status line, up to
32 headers and a body delimited by Content-Length. Chunked bodies are
rejected as malformed.
"""
from __future__ import annotations

import enum
import re
from email.utils import formatdate, parsedate_to_datetime
from typing import Optional

from upstream_sync.core.errors import BodyTooLarge, MalformedResponse, RequestTooLarge
from upstream_sync.models.schemas import ServiceEndpoint

MAX_REQUEST_SIZE = 1024
MAX_RESPONSE_HEADERS = 32
MAX_HEADER_BYTES = 64 * 1024
INITIAL_RECV_BUFFER = 1024

_STATUS_LINE = re.compile(rb"HTTP/1\.(\d) (\d{3})(?: (.*))?")
_HEADER_LINE = re.compile(rb"([!#$%&'*+.^_`|~0-9A-Za-z-]+):[ \t]*(.*?)[ \t]*")


def build_request(
    service: ServiceEndpoint,
    name: str,
    etag: str = "",
    last_modified: Optional[int] = None,
) -> bytes:
    """Build the conditional GET for one serverlist.

    Raises ``RequestTooLarge`` when it would not fit the send buffer.
    """
    sep = "" if service.uri.endswith("/") else "/"
    lines = [f"GET {service.uri}{sep}{name} HTTP/1.1", f"Host: {service.host_header}"]
    if last_modified is not None:
        lines.append(f"If-Modified-Since: {formatdate(last_modified, usegmt=True)}")
    if etag:
        lines.append(f"If-None-Match: {etag}")
    lines.append("Connection: Keep-Alive")

    request = ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")
    if len(request) > MAX_REQUEST_SIZE:
        raise RequestTooLarge(f"request for serverlist {name} is {len(request)} bytes", name)
    return request


class ResponseHead:
    """Status line and headers of a response."""

    def __init__(self, minor_version: int, status: int, reason: str, headers: list[tuple[str, str]], size: int):
        self.minor_version = minor_version
        self.status = status
        self.reason = reason
        self.headers = headers
        self.size = size  # bytes up to and including the blank line

    def header(self, name: str) -> Optional[str]:
        """First value of a header, matched case-insensitively."""
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None

    @property
    def content_length(self) -> Optional[int]:
        value = self.header("Content-Length")
        if value is None:
            return None
        if not (value.isascii() and value.isdigit()):
            raise MalformedResponse(f"invalid Content-Length {value!r}")
        return int(value)

    @property
    def etag(self) -> str:
        return self.header("ETag") or ""

    @property
    def last_modified(self) -> Optional[int]:
        """Last-Modified as a unix timestamp, None when absent or unparsable."""
        value = self.header("Last-Modified")
        if not value:
            return None
        try:
            return int(parsedate_to_datetime(value).timestamp())
        except (TypeError, ValueError):
            return None

    @property
    def keep_alive(self) -> bool:
        conn = (self.header("Connection") or "").lower()
        if self.minor_version == 0:
            return conn == "keep-alive"
        return conn != "close"


def parse_response_head(buf: bytes, group: Optional[str] = None) -> Optional[ResponseHead]:
    """Parse the head of a response held at the start of ``buf``.

    Returns None while the head is incomplete and raises
    ``MalformedResponse`` as soon as what arrived cannot be a valid head.
    """
    pos = 0
    status_line: Optional[re.Match] = None
    headers: list[tuple[str, str]] = []
    while True:
        nl = buf.find(b"\n", pos)
        if nl < 0:
            if len(buf) > MAX_HEADER_BYTES:
                raise MalformedResponse(f"response headers of serverlist {group} too large", group)
            return None
        line = buf[pos:nl]
        if line.endswith(b"\r"):
            line = line[:-1]
        pos = nl + 1

        if status_line is None:
            status_line = _STATUS_LINE.fullmatch(line)
            if status_line is None:
                raise MalformedResponse(f"bad status line in response of serverlist {group}: {line[:64]!r}", group)
            continue
        if not line:
            break
        m = _HEADER_LINE.fullmatch(line)
        if m is None:
            raise MalformedResponse(f"bad header line in response of serverlist {group}: {line[:64]!r}", group)
        if len(headers) >= MAX_RESPONSE_HEADERS:
            raise MalformedResponse(f"too many headers in response of serverlist {group}", group)
        headers.append((m.group(1).decode("latin-1"), m.group(2).decode("latin-1")))

    minor, status, reason = status_line.groups()
    return ResponseHead(int(minor), int(status), (reason or b"").decode("latin-1"), headers, pos)


class AssemblerState(enum.Enum):
    HEAD = "head"
    BODY = "body"
    DONE = "done"


class ResponseAssembler:
    """Reassembles one response from successive socket reads.

    The receive buffer starts at ``INITIAL_RECV_BUFFER`` bytes and doubles
    whenever it is full. Callers ask :meth:`reserve` how much to read and
    hand what they got to :meth:`feed` until it returns True.
    """

    def __init__(self, group: Optional[str] = None, initial_size: int = INITIAL_RECV_BUFFER):
        self.group = group
        self.state = AssemblerState.HEAD
        self.head: Optional[ResponseHead] = None
        self._buf = bytearray(initial_size)
        self._last = 0
        self._body_start = 0
        self._expected = 0
        # bytes after the message; the connection can no longer be reused
        self.trailing = False

    @property
    def buffer_size(self) -> int:
        return len(self._buf)

    @property
    def received(self) -> int:
        return self._last

    @property
    def body_received(self) -> int:
        return self._last - self._body_start if self.state is not AssemblerState.HEAD else 0

    def reserve(self) -> int:
        """Free space in the buffer, doubling it first if it is full."""
        if self._last == len(self._buf):
            self._grow()
        return len(self._buf) - self._last

    def _grow(self) -> None:
        # the body is tracked by offset, so it stays valid across the copy
        new_buf = bytearray(len(self._buf) * 2)
        new_buf[: self._last] = self._buf[: self._last]
        self._buf = new_buf

    def feed(self, data: bytes) -> bool:
        """Append received bytes; True once the whole response is in."""
        if self.state is AssemblerState.DONE:
            raise MalformedResponse(f"data after complete response of serverlist {self.group}", self.group)
        while len(self._buf) - self._last < len(data):
            self._grow()
        self._buf[self._last : self._last + len(data)] = data
        self._last += len(data)

        if self.state is AssemblerState.HEAD:
            head = parse_response_head(bytes(self._buf[: self._last]), self.group)
            if head is None:
                return False
            self.head = head
            self._body_start = head.size
            if not self._start_body(head):
                return True
        return self._check_body()

    def _start_body(self, head: ResponseHead) -> bool:
        """Decide whether a body follows the head; False means the message is done."""
        length = head.content_length
        if head.status == 304 or (head.status != 200 and length is None):
            self.trailing = self._last > self._body_start
            self.state = AssemblerState.DONE
            return False
        if length is None:
            raise MalformedResponse(f"serverlist {self.group} needs content length", self.group)
        self._expected = length
        self.state = AssemblerState.BODY
        return True

    def _check_body(self) -> bool:
        received = self._last - self._body_start
        if received < self._expected:
            return False
        if received > self._expected:
            if self.head is not None and self.head.status == 200:
                raise BodyTooLarge(
                    f"serverlist {self.group} body too big: {received} > {self._expected}", self.group
                )
            self.trailing = True
        self.state = AssemblerState.DONE
        return True

    @property
    def complete(self) -> bool:
        return self.state is AssemblerState.DONE

    @property
    def body(self) -> bytes:
        if self.state is not AssemblerState.DONE or self.head is None:
            return b""
        if self.head.status == 304 or self._expected == 0:
            return b""
        return bytes(self._buf[self._body_start : self._body_start + self._expected])

    @property
    def keep_alive(self) -> bool:
        """Whether the connection can carry the next request."""
        if self.head is None or self.trailing:
            return False
        if self.head.status not in (200, 304) and self.head.content_length is None:
            return False
        return self.head.keep_alive
