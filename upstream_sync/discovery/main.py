"""Mock discovery service serving serverlists over plain HTTP.

Run with ``uvicorn upstream_sync.discovery.main:app --port 8080`` and point
``SERVERLIST_SERVICE_URL`` at ``http://127.0.0.1:8080/serverlist``.
"""
from fastapi import FastAPI

from upstream_sync.discovery.routes import router

app = FastAPI(title="Serverlist Discovery (Mock)")
app.include_router(router)


@app.get("/health")
async def health():
    """Simple health endpoint for the mock discovery service."""
    return {"status": "ok", "mock": True}
