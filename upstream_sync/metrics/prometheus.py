"""Prometheus metrics for the serverlist refresher and the /metrics endpoint."""
from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

metrics_router = APIRouter()

# result: changed | unchanged | not_modified | http_status | error
REFRESHES = Counter("serverlist_refresh_total", "Serverlist refreshes by outcome", ["result"])
REFRESH_LATENCY = Histogram("serverlist_refresh_latency_seconds", "Per-group refresh latency seconds")
POOL_SWAPS = Counter("serverlist_pool_swaps_total", "Upstream pools replaced after a change")
ERRORS = Counter("serverlist_errors_total", "Refresh errors by kind", ["kind"])
# result: written | skipped | failed
SNAPSHOT_WRITES = Counter("serverlist_snapshot_writes_total", "Snapshot dump attempts", ["result"])
CYCLE_SECONDS = Histogram("serverlist_cycle_seconds", "Time to refresh a whole shard")


@metrics_router.get("/metrics")
async def metrics():
    """Prometheus exposition endpoint."""
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
