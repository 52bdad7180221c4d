"""Splits the configured groups across pollers and runs them."""
from __future__ import annotations

import asyncio
from typing import Iterable, Sequence

from upstream_sync.core.errors import PoolRebuildFailure
from upstream_sync.core.logging import get_logger
from upstream_sync.models.schemas import GroupConfig
from upstream_sync.services.poller import Poller, RefreshContext
from upstream_sync.services.upstream import UpstreamGroup

log = get_logger("scheduler")


def shard_ranges(total: int, concurrency: int) -> list[tuple[int, int]]:
    """Contiguous ``[start, end)`` ranges, one per poller.

    With more pollers than groups the extra pollers get empty ranges.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    blocksize = (total + concurrency - 1) // concurrency if total >= concurrency else 1
    ranges = []
    for i in range(concurrency):
        start = min(total, blocksize * i)
        ranges.append((start, min(total, start + blocksize)))
    return ranges


def build_groups(configs: Iterable[GroupConfig], ctx: RefreshContext) -> list[UpstreamGroup]:
    """Create the groups and seed each one from its snapshot, if any."""
    groups = []
    for cfg in configs:
        group = UpstreamGroup.from_config(cfg)
        servers = ctx.snapshots.load(group.name, ctx.resolver)
        if servers:
            try:
                ctx.swap.apply(group, servers)
                log.info("serverlist %s restored %d servers from snapshot", group.name, len(servers))
            except PoolRebuildFailure as e:
                log.error("serverlist %s: snapshot not applied: %s", group.name, e)
        groups.append(group)
    return groups


class Scheduler:
    """Owns the pollers of one worker process."""

    def __init__(self, groups: Sequence[UpstreamGroup], ctx: RefreshContext, concurrency: int = 1):
        self.groups = list(groups)
        self.ctx = ctx
        self.pollers = [
            Poller(ctx, self.groups, start, end, index=i)
            for i, (start, end) in enumerate(shard_ranges(len(self.groups), concurrency))
        ]

    def start(self) -> None:
        for poller in self.pollers:
            poller.start_polling()
        log.info(
            "started %d pollers for %d serverlists against %s",
            sum(not p.empty for p in self.pollers), len(self.groups), self.ctx.service.display,
        )

    async def stop(self) -> None:
        await asyncio.gather(*(p.stop() for p in self.pollers))
        log.info("stopped %d pollers", len(self.pollers))
