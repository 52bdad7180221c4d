"""Upstream groups and the pool swap controller.

A group's live pool is replaced by a single attribute assignment. Readers
grab ``group.pool`` once and keep using that object; the old pool is freed
when the last of them lets go of it.
"""
from __future__ import annotations

from email.utils import formatdate
from typing import Callable, Optional, Sequence

from upstream_sync.core.errors import PeerPoolError, PoolRebuildFailure
from upstream_sync.core.logging import get_logger
from upstream_sync.metrics.prometheus import POOL_SWAPS
from upstream_sync.models.schemas import GroupConfig, GroupDetail, GroupStatus, ServerDescriptor
from upstream_sync.services.diff import servers_changed
from upstream_sync.services.peers import PeerPool, build_round_robin
from upstream_sync.services.serverlist import format_server_line

log = get_logger("swap")

PoolBuilder = Callable[[str, Sequence[ServerDescriptor], int], PeerPool]


class UpstreamGroup:
    """One upstream group kept in sync with a serverlist."""

    def __init__(self, upstream: str, serverlist: Optional[str] = None):
        self.upstream = upstream
        self.name = serverlist or upstream
        self.servers: tuple[ServerDescriptor, ...] = ()
        self.pool: Optional[PeerPool] = None
        self.generation = 0
        # validators of the last applied response
        self.last_modified: Optional[int] = None
        self.etag = ""

    @classmethod
    def from_config(cls, cfg: GroupConfig) -> "UpstreamGroup":
        return cls(cfg.upstream, cfg.serverlist)

    def set_validators(self, etag: str, last_modified: Optional[int]) -> None:
        self.etag = etag
        self.last_modified = last_modified

    def reset_validators(self) -> None:
        """Forget both validators so the next request is unconditional."""
        self.etag = ""
        self.last_modified = None

    def status(self) -> GroupStatus:
        return GroupStatus(
            upstream=self.upstream,
            serverlist=self.name,
            generation=self.generation,
            servers=len(self.servers),
            etag=self.etag or None,
            last_modified=formatdate(self.last_modified, usegmt=True) if self.last_modified is not None else None,
        )

    def detail(self) -> GroupDetail:
        pool = self.pool
        return GroupDetail(
            **self.status().model_dump(),
            lines=[format_server_line(s) for s in self.servers],
            peers=len(pool.peers) if pool else 0,
            backup_peers=len(pool.backup) if pool else 0,
        )

    def __repr__(self) -> str:
        return f"UpstreamGroup({self.upstream!r}, serverlist={self.name!r}, gen={self.generation})"


class PoolSwapController:
    """Rebuilds and publishes a group's pool when its server set changed."""

    def __init__(self, builder: PoolBuilder = build_round_robin):
        self._builder = builder

    def apply(self, group: UpstreamGroup, servers: Sequence[ServerDescriptor]) -> bool:
        """Apply a parsed server set to ``group``.

        Returns False when nothing changed and True after a swap. Raises
        ``PoolRebuildFailure`` when the new pool cannot be built; the group
        then still points at its previous pool and server set.
        """
        if not servers_changed(group.servers, servers):
            log.debug("serverlist %s nothing changed", group.name)
            return False

        generation = group.generation + 1
        try:
            pool = self._builder(group.upstream, servers, generation)
        except (PeerPoolError, MemoryError) as e:
            log.error("refresh upstream %s failed, rollback it: %s", group.upstream, e)
            raise PoolRebuildFailure(f"refresh upstream {group.upstream} failed: {e}", group.name) from e

        group.servers = tuple(servers)
        group.generation = generation
        group.pool = pool
        POOL_SWAPS.inc()
        log.info(
            "upstream %s now has %d servers (%d peers, %d backup), generation %d",
            group.upstream, len(servers), len(pool.peers), len(pool.backup), generation,
        )
        return True
