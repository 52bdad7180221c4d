"""On-disk snapshots of upstream groups.

Every applied server set is dumped to ``<dump-dir>/<serverlist>.conf`` so a
restarted balancer can come back with the last known membership. Sibling
worker processes refresh the same groups, so each dump is guarded by a
non-blocking ``flock`` on ``<dump-dir>/.<serverlist>.conf.lock``: whoever
holds it writes, everybody else skips that round.
"""
from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import Optional

from upstream_sync.core.errors import RefreshError, SnapshotIOFailure
from upstream_sync.core.logging import get_logger
from upstream_sync.metrics.prometheus import SNAPSHOT_WRITES
from upstream_sync.models.schemas import ServerDescriptor
from upstream_sync.services.serverlist import Resolver, parse_server_list, resolve_address, serialize_servers
from upstream_sync.services.upstream import UpstreamGroup

log = get_logger("snapshot")


class SnapshotLock:
    """Process-shared try-lock backed by ``flock`` on a lock file."""

    def __init__(self, path: Path):
        self.path = path
        self._fd: Optional[int] = None
        self._held = False

    def try_acquire(self) -> bool:
        """Take the lock without blocking; False if a sibling holds it."""
        if self._fd is None:
            self._fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(self._fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        self._held = True
        return True

    def release(self) -> None:
        if self._fd is not None and self._held:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            self._held = False

    def close(self) -> None:
        self.release()
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    @property
    def held(self) -> bool:
        return self._held


class SnapshotWriter:
    """Writes and reads group snapshots in one dump directory."""

    def __init__(self, dump_dir: Optional[Path]):
        self.dump_dir = Path(dump_dir) if dump_dir is not None else None
        self._locks: dict[str, SnapshotLock] = {}

    @property
    def enabled(self) -> bool:
        return self.dump_dir is not None

    def snapshot_path(self, name: str) -> Path:
        assert self.dump_dir is not None
        return self.dump_dir / f"{name}.conf"

    def temp_path(self, name: str) -> Path:
        assert self.dump_dir is not None
        return self.dump_dir / f".{name}.conf.tmp"

    def lock_for(self, name: str) -> SnapshotLock:
        assert self.dump_dir is not None
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = SnapshotLock(self.dump_dir / f".{name}.conf.lock")
        return lock

    def dump(self, group: UpstreamGroup) -> bool:
        """Dump the group's current servers.

        Returns True when the file was replaced, False when dumping is off or
        another process holds the lock. Raises ``SnapshotIOFailure`` when the
        file could not be written; the previous snapshot is then left intact.
        """
        if self.dump_dir is None:
            return False

        try:
            lock = self.lock_for(group.name)
            acquired = lock.try_acquire()
        except OSError as e:
            SNAPSHOT_WRITES.labels(result="failed").inc()
            raise SnapshotIOFailure(f"open lock file for {group.name} failed: {e}", group.name) from e
        if not acquired:
            log.info("another worker process is dumping serverlist %s", group.name)
            SNAPSHOT_WRITES.labels(result="skipped").inc()
            return False

        tmpfile = self.temp_path(group.name)
        try:
            try:
                with open(tmpfile, "w", encoding="ascii") as f:
                    f.write(serialize_servers(group.servers))
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise SnapshotIOFailure(f"write dump file {tmpfile} failed: {e}", group.name) from e

            try:
                os.replace(tmpfile, self.snapshot_path(group.name))
            except OSError as e:
                raise SnapshotIOFailure(f"rename dump file {tmpfile} failed: {e}", group.name) from e
        except SnapshotIOFailure:
            SNAPSHOT_WRITES.labels(result="failed").inc()
            raise
        finally:
            lock.release()

        SNAPSHOT_WRITES.labels(result="written").inc()
        log.debug("dumped serverlist %s (%d servers)", group.name, len(group.servers))
        return True

    def load(self, name: str, resolver: Resolver = resolve_address) -> Optional[list[ServerDescriptor]]:
        """Read a previous snapshot back; None if there is none or it is unusable."""
        if self.dump_dir is None:
            return None
        path = self.snapshot_path(name)
        try:
            text = path.read_text(encoding="ascii")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            log.error("read snapshot %s failed: %s", path, e)
            return None

        try:
            return parse_server_list(text, resolver=resolver, group=name)
        except RefreshError as e:
            log.error("snapshot %s is unusable: %s", path, e)
            return None

    def close(self) -> None:
        for lock in self._locks.values():
            lock.close()
        self._locks.clear()
