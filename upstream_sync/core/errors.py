"""Error kinds raised while refreshing a serverlist.

Every error terminates the refresh of the current group only. The poller
logs it with the group name, decides what to do with the cursor and the
connection, and waits for the next tick. None of them stop the process.
"""
from __future__ import annotations

from typing import Optional


class RefreshError(Exception):
    """Base class for a failed refresh of one group."""

    def __init__(self, message: str, group: Optional[str] = None):
        super().__init__(message)
        self.group = group

    @property
    def kind(self) -> str:
        """Short label used for metrics and log lines."""
        return type(self).__name__


class ConnectFailure(RefreshError):
    """The connection to the discovery service could not be established."""


class RefreshTimeout(RefreshError):
    """A single group's send/receive/apply did not finish in time."""


class RemoteClosed(RefreshError):
    """The discovery service closed the connection mid-exchange."""

    def __init__(self, message: str, group: Optional[str] = None, received: int = 0):
        super().__init__(message, group)
        self.received = received


class RequestTooLarge(RefreshError):
    """The conditional GET does not fit the fixed send buffer."""


class MalformedResponse(RefreshError):
    """Bad status line or headers, or a 200 without Content-Length."""


class BodyTooLarge(RefreshError):
    """More body bytes arrived than Content-Length announced."""


class BodyParseFailure(RefreshError):
    """The body held no valid server line."""


class PoolRebuildFailure(RefreshError):
    """The peer pool could not be rebuilt; the previous pool stays live."""


class SnapshotIOFailure(RefreshError):
    """Opening, writing or renaming a snapshot file failed."""


class PeerPoolError(ValueError):
    """Raised by the pool builder when a server set cannot form a pool."""
