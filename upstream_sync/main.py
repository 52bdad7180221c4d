"""Serverlist refresher FastAPI application.

Starts the pollers that keep upstream groups in sync with the discovery
service, and exposes their state, a health probe and Prometheus metrics.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from upstream_sync.api.routes import router
from upstream_sync.core.config import load_settings
from upstream_sync.core.logging import setup_logging
from upstream_sync.metrics.prometheus import metrics_router
from upstream_sync.services.poller import RefreshContext
from upstream_sync.services.scheduler import Scheduler, build_groups


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan.

    Loads settings, restores groups from their snapshots and runs the
    pollers for as long as the app lives.
    """
    setup_logging()
    settings = load_settings()
    ctx = RefreshContext.from_settings(settings)
    groups = build_groups(settings.groups, ctx)
    scheduler = Scheduler(groups, ctx, settings.concurrency)

    app.state.settings = settings
    app.state.groups = groups
    app.state.scheduler = scheduler
    scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        ctx.snapshots.close()


app = FastAPI(title="upstream-sync", version="0.1.0", lifespan=lifespan)
app.include_router(router)
app.include_router(metrics_router)


@app.get("/readyz")
async def readyz():
    """Readiness probe endpoint returning a minimal OK payload."""
    return {"status": "ok"}
