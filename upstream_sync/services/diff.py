"""Change detection between the live server set and a freshly parsed one."""
from __future__ import annotations

from typing import Sequence

from upstream_sync.models.schemas import ServerDescriptor


def servers_changed(old: Sequence[ServerDescriptor], new: Sequence[ServerDescriptor]) -> bool:
    """Return True when ``new`` differs from ``old``.

    Comparison is order independent and counts duplicates: the sets are
    unchanged when they have the same size and every old server pairs off
    with its own matching new server (same options, same resolved
    addresses in any order). Groups hold tens of servers, so the nested
    scan is fine.
    """
    if len(old) != len(new):
        return True
    unmatched = list(new)
    for s1 in old:
        for i, s2 in enumerate(unmatched):
            if s1.matches(s2):
                del unmatched[i]
                break
        else:
            return True
    return False
