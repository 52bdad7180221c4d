"""Shared fixtures: a scripted discovery service and a uvicorn runner."""
from __future__ import annotations

import asyncio
import socket
import threading
import time
from contextlib import closing
from email.utils import formatdate
from typing import Optional

import pytest
import uvicorn


@pytest.fixture
def anyio_backend():
    return "asyncio"


# --- helpers ---------------------------------------------------------------

def free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def ok(body: str, etag: Optional[str] = None, last_modified: Optional[int] = None, extra: str = "") -> bytes:
    """Raw 200 response carrying a serverlist body."""
    data = body.encode()
    head = f"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\nContent-Length: {len(data)}\r\n"
    if etag:
        head += f"ETag: {etag}\r\n"
    if last_modified is not None:
        head += f"Last-Modified: {formatdate(last_modified, usegmt=True)}\r\n"
    return (head + extra + "\r\n").encode() + data


NOT_MODIFIED = b"HTTP/1.1 304 Not Modified\r\n\r\n"


class Reply:
    """A scripted answer: chunks to send, then optionally hang or close."""

    def __init__(self, *chunks: bytes, hang: bool = False, close: bool = False, pause: float = 0.0):
        self.chunks = chunks
        self.hang = hang
        self.close = close
        self.pause = pause


class FakeService:
    """asyncio discovery service answering requests from a per-path script."""

    def __init__(self):
        self.replies: dict[str, list] = {}
        self.requests: list[str] = []
        self.connections = 0
        self.port = 0
        self._server: Optional[asyncio.AbstractServer] = None
        self._handlers: set[asyncio.Task] = set()

    def script(self, path: str, *replies) -> None:
        self.replies.setdefault(path, []).extend(replies)

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}/serverlist"

    async def start(self) -> "FakeService":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            # handlers parked on a hanging reply would keep wait_closed() waiting
            for task in list(self._handlers):
                task.cancel()
            await asyncio.gather(*self._handlers, return_exceptions=True)
            await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        task = asyncio.current_task()
        self._handlers.add(task)
        try:
            while True:
                head = (await reader.readuntil(b"\r\n\r\n")).decode()
                self.requests.append(head)
                path = head.split(" ")[1]
                queue = self.replies.get(path) or [b"HTTP/1.1 404 Not Found\r\nContent-Length: 0\r\n\r\n"]
                reply = queue.pop(0)
                if isinstance(reply, bytes):
                    reply = Reply(reply)
                for chunk in reply.chunks:
                    writer.write(chunk)
                    await writer.drain()
                    if reply.pause:
                        await asyncio.sleep(reply.pause)
                if reply.hang:
                    await asyncio.sleep(3600)
                if reply.close:
                    break
        except (asyncio.IncompleteReadError, ConnectionError, asyncio.CancelledError):
            pass
        finally:
            self._handlers.discard(task)
            writer.close()


@pytest.fixture
async def fake_service():
    service = await FakeService().start()
    yield service
    await service.close()


class BgServer:
    """Run a uvicorn server in a background thread; stop with should_exit=True."""

    def __init__(self, app, host: str, port: int):
        self.config = uvicorn.Config(app, host=host, port=port, log_level="error")
        self.server = uvicorn.Server(self.config)
        self.thread = threading.Thread(target=self.server.run, daemon=True)

    def start(self):
        self.thread.start()
        # Wait until port is accepting connections
        deadline = time.time() + 5
        while time.time() < deadline:
            try:
                with socket.create_connection((self.config.host, self.config.port), timeout=0.25):
                    return
            except OSError:
                time.sleep(0.05)
        raise RuntimeError("Server failed to start")

    def stop(self):
        self.server.should_exit = True
        self.thread.join(timeout=3)
