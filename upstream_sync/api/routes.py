"""API routes of the refresher.

Read-only views of the upstream groups this process keeps in sync with the
discovery service.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from upstream_sync.core.logging import get_logger
from upstream_sync.models.schemas import GroupDetail, GroupStatus
from upstream_sync.services.upstream import UpstreamGroup

log = get_logger("api")
router = APIRouter()


def _get_groups(request: Request) -> list[UpstreamGroup]:
    """Return the groups placed on ``app.state`` by the application lifespan."""
    groups: Optional[list[UpstreamGroup]] = getattr(request.app.state, "groups", None)
    return groups or []


def _find_group(request: Request, name: str) -> UpstreamGroup:
    for group in _get_groups(request):
        if name in (group.upstream, group.name):
            return group
    raise HTTPException(status_code=404, detail="upstream not found")


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "OK"}


@router.get("/upstreams", response_model=list[GroupStatus])
async def list_upstreams(request: Request):
    """Summary of every group: generation, size and cached validators."""
    return [g.status() for g in _get_groups(request)]


@router.get("/upstreams/{name}", response_model=GroupDetail)
async def get_upstream(name: str, request: Request):
    """One group by upstream or serverlist name, with its server lines."""
    group = _find_group(request, name)
    log.debug("upstream %s requested (generation %d)", group.upstream, group.generation)
    return group.detail()
