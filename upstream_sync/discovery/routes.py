from email.utils import formatdate, parsedate_to_datetime
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request, Response

from upstream_sync.discovery.registry import StoredList, registry

router = APIRouter()


def _validators(stored: StoredList) -> dict[str, str]:
    return {"ETag": stored.etag, "Last-Modified": formatdate(stored.last_modified, usegmt=True)}


def _not_modified(stored: StoredList, if_none_match: Optional[str], if_modified_since: Optional[str]) -> bool:
    # If-None-Match wins over If-Modified-Since when both are sent
    if if_none_match is not None:
        return stored.etag in [tag.strip() for tag in if_none_match.split(",")]
    if if_modified_since:
        try:
            since = int(parsedate_to_datetime(if_modified_since).timestamp())
        except (TypeError, ValueError):
            return False
        return stored.last_modified <= since
    return False


@router.put("/serverlist/{name}")
async def put_serverlist(name: str, request: Request):
    """Create or replace a serverlist; returns its validators."""
    body = (await request.body()).decode("latin-1")
    stored, changed = registry.put(name, body)
    return {"name": name, "etag": stored.etag, "version": stored.version, "changed": changed}


@router.get("/serverlist/{name}")
async def get_serverlist(
    name: str,
    if_none_match: Optional[str] = Header(default=None),
    if_modified_since: Optional[str] = Header(default=None),
):
    """Serve a serverlist as text, or 304 when the caller's copy is current."""
    stored = registry.get(name)
    if stored is None:
        raise HTTPException(404, detail="serverlist not found")
    if _not_modified(stored, if_none_match, if_modified_since):
        return Response(status_code=304, headers=_validators(stored))
    return Response(content=stored.body, media_type="text/plain", headers=_validators(stored))


@router.delete("/serverlist/{name}")
async def delete_serverlist(name: str):
    if not registry.delete(name):
        raise HTTPException(404, detail="serverlist not found")
    return {"ok": True}


@router.get("/serverlists")
async def list_serverlists():
    return registry.names()
