"""Peer-selection structure of an upstream group.

This stands in for the host load balancer's own round-robin initialiser:
every resolved address of every server becomes one peer, backup servers go
to a separate tier, and selection is smooth weighted round-robin.

Pools are never modified after construction except for selection counters.
A refresh builds a new pool and publishes it in one assignment.
"""
from __future__ import annotations

import threading
import time
from typing import Optional, Sequence

from upstream_sync.core.errors import PeerPoolError
from upstream_sync.models.schemas import Address, ServerDescriptor


class Peer:
    """One address of one server."""

    __slots__ = ("server", "addr", "weight", "max_fails", "fail_timeout", "max_conns", "down", "current_weight")

    def __init__(self, server: ServerDescriptor, addr: Address):
        self.server = server.name
        self.addr = addr
        self.weight = server.weight
        self.max_fails = server.max_fails
        self.fail_timeout = server.fail_timeout
        self.max_conns = server.max_conns
        self.down = server.down
        self.current_weight = 0

    def __repr__(self) -> str:
        return f"Peer({self.addr.name}, weight={self.weight}{', down' if self.down else ''})"


def _weighted_pick(peers: list[Peer]) -> Optional[Peer]:
    """Smooth weighted round-robin step over peers that are not down."""
    best: Optional[Peer] = None
    total = 0
    for peer in peers:
        if peer.down:
            continue
        peer.current_weight += peer.weight
        total += peer.weight
        if best is None or peer.current_weight > best.current_weight:
            best = peer
    if best is not None:
        best.current_weight -= total
    return best


class PeerPool:
    """Weighted round-robin pool for one upstream group."""

    def __init__(self, upstream: str, peers: list[Peer], backup: list[Peer], generation: int = 0):
        self.name = upstream
        self.peers = peers
        self.backup = backup
        self.generation = generation
        self.total_weight = sum(p.weight for p in peers)
        self.created = time.time()
        self.request_count = 0
        self._lock = threading.Lock()

    def pick(self) -> Optional[Peer]:
        """Pick the next peer; falls back to the backup tier when every primary is down."""
        with self._lock:
            peer = _weighted_pick(self.peers) or _weighted_pick(self.backup)
            if peer is not None:
                self.request_count += 1
            return peer

    def __len__(self) -> int:
        return len(self.peers)

    def __repr__(self) -> str:
        return f"PeerPool({self.name!r}, gen={self.generation}, peers={len(self.peers)}, backup={len(self.backup)})"


def build_round_robin(upstream: str, servers: Sequence[ServerDescriptor], generation: int = 0) -> PeerPool:
    """Build a pool from a server set.

    Raises ``PeerPoolError`` when the set has no primary (non-backup) peer.
    """
    peers = [Peer(s, a) for s in servers if not s.backup for a in s.addrs]
    if not peers:
        raise PeerPoolError(f"no servers in upstream {upstream!r}")
    backup = [Peer(s, a) for s in servers if s.backup for a in s.addrs]
    return PeerPool(upstream, peers, backup, generation)
