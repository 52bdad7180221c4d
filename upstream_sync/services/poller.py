"""Serverlist poller.

A poller owns one keep-alive connection to the discovery service and a
contiguous shard of groups. Every tick it walks the shard from its cursor,
one group at a time::

    IDLE -> CONNECTING -> SENDING -> RECEIVING -> APPLYING -> (next group | IDLE)

and any failure drops the connection (CLOSED) until the next tick. When the
cursor reaches the end of the shard the connection is left open under an
idle-read watch and the poller sleeps ``interval + random(0, 500ms)``.
"""
from __future__ import annotations

import asyncio
import enum
import random
from dataclasses import dataclass, field
from typing import Optional, Sequence

from upstream_sync.core.config import Settings
from upstream_sync.core.errors import (
    BodyParseFailure,
    ConnectFailure,
    PoolRebuildFailure,
    RefreshError,
    RefreshTimeout,
    RemoteClosed,
    SnapshotIOFailure,
)
from upstream_sync.core.logging import get_logger
from upstream_sync.metrics.prometheus import CYCLE_SECONDS, ERRORS, REFRESH_LATENCY, REFRESHES
from upstream_sync.models.schemas import ServiceEndpoint
from upstream_sync.services.http_response import ResponseAssembler, build_request
from upstream_sync.services.serverlist import Resolver, parse_server_list, resolve_address
from upstream_sync.services.snapshot import SnapshotWriter
from upstream_sync.services.upstream import PoolSwapController, UpstreamGroup

log = get_logger("poller")

JITTER_S = 0.5


class PollerState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SENDING = "sending"
    RECEIVING = "receiving"
    APPLYING = "applying"
    CLOSED = "closed"


@dataclass
class RefreshContext:
    """Everything a poller needs, handed over at construction."""

    service: ServiceEndpoint
    request_timeout_s: float = 2.0
    refresh_interval_s: float = 5.0
    swap: PoolSwapController = field(default_factory=PoolSwapController)
    snapshots: SnapshotWriter = field(default_factory=lambda: SnapshotWriter(None))
    resolver: Resolver = resolve_address

    @classmethod
    def from_settings(cls, settings: Settings) -> "RefreshContext":
        return cls(
            service=settings.service,
            request_timeout_s=settings.request_timeout_s,
            refresh_interval_s=settings.refresh_interval_s,
            snapshots=SnapshotWriter(settings.conf_dump_dir),
        )


class Poller:
    """Refreshes one shard of groups over one connection."""

    def __init__(self, ctx: RefreshContext, groups: Sequence[UpstreamGroup], start: int, end: int, index: int = 0):
        self.ctx = ctx
        self.groups = groups
        self.start = start
        self.end = end
        self.index = index
        self.cursor = start
        self.state = PollerState.CLOSED

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._exchanges = 0  # completed exchanges on the current connection
        self._idle_watch: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None
        self._cycle_started: Optional[float] = None
        self._stopping = False

    def __repr__(self) -> str:
        return f"Poller(#{self.index}, shard=[{self.start}, {self.end}), cursor={self.cursor}, {self.state.value})"

    @property
    def empty(self) -> bool:
        return self.start >= self.end

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    def next_delay(self) -> float:
        """Refresh interval plus jitter, so sibling processes drift apart."""
        return self.ctx.refresh_interval_s + random.uniform(0, JITTER_S)

    # --- lifecycle -----------------------------------------------------------

    def start_polling(self) -> None:
        """Arm the refresh timer; pollers with an empty shard never start."""
        if self.empty or self._task is not None:
            return
        self._task = asyncio.create_task(self.run(), name=f"serverlist-poller-{self.index}")

    async def stop(self) -> None:
        self._stopping = True
        await self._stop_idle_watch()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._close()

    async def run(self) -> None:
        delay = self.next_delay()
        while not self._stopping:
            await asyncio.sleep(delay)
            if self._stopping:
                break
            try:
                delay = await self.tick()
            except Exception:
                log.exception("poller %d tick failed", self.index)
                self._close()
                delay = self.next_delay()

    # --- one tick ------------------------------------------------------------

    async def tick(self) -> float:
        """Walk the shard from the cursor; returns the delay until the next tick."""
        await self._stop_idle_watch()
        loop = asyncio.get_running_loop()
        if self._cycle_started is None:
            self._cycle_started = loop.time()
        log.debug("poller %d refreshing serverlists %d to %d, cursor %d", self.index, self.start, self.end, self.cursor)

        retried = False
        while not self._stopping:
            group = self.groups[self.cursor]
            started = loop.time()
            try:
                await asyncio.wait_for(self._refresh(group), self.ctx.request_timeout_s)
            except asyncio.TimeoutError:
                if self.state is PollerState.CONNECTING:
                    self._fail(ConnectFailure(f"connect to {self.ctx.service.display} timed out", group.name))
                    return self.next_delay()
                self._fail(RefreshTimeout(
                    f"refresh timeout start {self.start} end {self.end} curr {self.cursor}", group.name
                ))
                return self._advance_after_failure()
            except ConnectFailure as e:
                self._fail(e)
                return self.next_delay()
            except RemoteClosed as e:
                reused = self._exchanges > 0
                self._close()
                if reused and e.received == 0 and not retried:
                    # keep-alive connection went away while idle, retry on a new one
                    log.debug("serverlist %s: idle connection was closed, reconnecting", group.name)
                    retried = True
                    continue
                self._fail(e)
                return self._advance_after_failure()
            except RefreshError as e:
                self._fail(e)
                return self._advance_after_failure()
            except OSError as e:
                self._fail(RefreshError(f"socket error: {e}", group.name))
                return self._advance_after_failure()
            except Exception as e:
                log.exception("poller %d serverlist %s: unexpected error", self.index, group.name)
                self._fail(RefreshError(f"unexpected error: {e!r}", group.name))
                return self._advance_after_failure()

            REFRESH_LATENCY.observe(loop.time() - started)
            retried = False
            if self._advance():
                return self.next_delay()
        return 0.0

    def _advance(self) -> bool:
        """Move to the next group; True when the shard pass is over."""
        self.cursor += 1
        if self.cursor < self.end:
            return False

        now = asyncio.get_running_loop().time()
        elapsed = now - self._cycle_started if self._cycle_started is not None else 0.0
        CYCLE_SECONDS.observe(elapsed)
        log.info(
            "finished refresh serverlists from %d to %d, elapsed: %dms",
            self.start, self.end, int(elapsed * 1000),
        )
        self.cursor = self.start
        self._cycle_started = None
        if self.connected:
            self.state = PollerState.IDLE
            self._idle_watch = asyncio.create_task(self._watch_idle(), name=f"serverlist-idle-{self.index}")
        return True

    def _advance_after_failure(self) -> float:
        self._advance()
        return self.next_delay()

    def _fail(self, error: RefreshError) -> None:
        ERRORS.labels(kind=error.kind).inc()
        REFRESHES.labels(result="error").inc()
        log.error(
            "poller %d [%d, %d) serverlist %s: %s: %s", self.index, self.start, self.end, error.group, error.kind, error
        )
        self._close()

    # --- one group -----------------------------------------------------------

    async def _refresh(self, group: UpstreamGroup) -> None:
        await self._ensure_connected(group)
        assert self._reader is not None and self._writer is not None

        self.state = PollerState.SENDING
        request = build_request(self.ctx.service, group.name, group.etag, group.last_modified)
        self._writer.write(request)
        await self._writer.drain()

        self.state = PollerState.RECEIVING
        response = ResponseAssembler(group.name)
        while True:
            data = await self._reader.read(response.reserve())
            if not data:
                raise RemoteClosed(
                    f"connection closed after {response.received} bytes", group.name, received=response.received
                )
            if response.feed(data):
                break
        self._exchanges += 1

        self.state = PollerState.APPLYING
        keep_alive = response.keep_alive
        await self._apply(group, response)
        if not keep_alive:
            self._close()

    async def _ensure_connected(self, group: UpstreamGroup) -> None:
        if self._writer is not None and (self._writer.is_closing() or self._reader.at_eof()):
            self._close()
        if self._writer is not None:
            return

        self.state = PollerState.CONNECTING
        service = self.ctx.service
        try:
            if service.unix_path:
                self._reader, self._writer = await asyncio.open_unix_connection(service.unix_path)
            else:
                self._reader, self._writer = await asyncio.open_connection(service.host, service.port)
        except OSError as e:
            raise ConnectFailure(f"connect to service url failed: {service.display}: {e}", group.name) from e
        self._exchanges = 0

    async def _apply(self, group: UpstreamGroup, response: ResponseAssembler) -> None:
        head = response.head
        assert head is not None
        if head.status == 304:
            REFRESHES.labels(result="not_modified").inc()
            log.debug("serverlist %s not modified", group.name)
            return
        if head.status != 200:
            REFRESHES.labels(result="http_status").inc()
            log.error("response of serverlist %s is not 200: %d", group.name, head.status)
            return

        etag, last_modified = head.etag, head.last_modified
        if etag and group.etag and etag.lower() == group.etag.lower():
            REFRESHES.labels(result="unchanged").inc()
            return
        if not etag and last_modified is not None and group.last_modified is not None \
                and last_modified <= group.last_modified:
            REFRESHES.labels(result="unchanged").inc()
            return

        try:
            servers = await asyncio.to_thread(parse_server_list, response.body, self.ctx.resolver, group.name)
            changed = self.ctx.swap.apply(group, servers)
        except (BodyParseFailure, PoolRebuildFailure) as e:
            # force an unconditional fetch next round
            group.reset_validators()
            ERRORS.labels(kind=e.kind).inc()
            REFRESHES.labels(result="error").inc()
            log.error("poller %d serverlist %s: %s", self.index, group.name, e)
            return

        group.set_validators(etag, last_modified)
        if not changed:
            REFRESHES.labels(result="unchanged").inc()
            return
        REFRESHES.labels(result="changed").inc()
        try:
            self.ctx.snapshots.dump(group)
        except SnapshotIOFailure as e:
            ERRORS.labels(kind=e.kind).inc()
            log.error("serverlist %s: %s", group.name, e)

    # --- connection ----------------------------------------------------------

    async def _watch_idle(self) -> None:
        """Notice the service closing the idle connection between ticks."""
        reader = self._reader
        if reader is None:
            return
        try:
            data = await reader.read(1)
        except OSError as e:
            log.debug("poller %d idle connection error: %s", self.index, e)
        else:
            if data:
                log.warning("poller %d got unexpected data on idle connection", self.index)
            else:
                log.debug("poller %d idle connection closed by service", self.index)
        if self._reader is reader:
            self._close()

    async def _stop_idle_watch(self) -> None:
        task, self._idle_watch = self._idle_watch, None
        if task is not None and not task.done():
            # the watcher must let go of the reader before anyone reads again
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _close(self) -> None:
        writer = self._writer
        self._reader = self._writer = None
        self._exchanges = 0
        self.state = PollerState.CLOSED
        if writer is not None:
            writer.close()
