"""
PostgresCluster API routes.

Features:
  - Read-only listing of PostgresCluster resources and their status
  - Dry-run render: the manifests a spec would produce, without applying them
  - Activity log from status, supplemented by the Redis stream
  - Rate limiting per-IP via slowapi
  - Prometheus metrics
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from kubernetes.client import ApiException
from kubernetes.config import ConfigException
from prometheus_client import Counter, Gauge
from slowapi import Limiter
from slowapi.util import get_remote_address

from pgcluster_operator.builders import generate_cluster_intents
from pgcluster_operator.config import settings
from pgcluster_operator.errors import SpecInvalid
from pgcluster_operator.events import read_events
from pgcluster_operator.models import (
    ActivityLogEntry, ClusterCondition, ClusterListResponse, ClusterResponse,
    ClusterSpec, ErrorResponse, RenderedObject, RenderResponse,
)
from pgcluster_operator.naming import Taxonomy
from pgcluster_operator.store import get_cluster, list_clusters

logger = logging.getLogger("pgcluster.api")

router = APIRouter(prefix="/clusters", tags=["clusters"])
limiter = Limiter(key_func=get_remote_address)

PHASES = ["Ready", "Progressing", "Retrying", "Failed", "Pending"]

# --- Prometheus metrics ---
RENDERS = Counter(
    "pgcluster_renders_total",
    "Dry-run renders served",
    ["result"],
)
RENDERED_OBJECTS = Counter(
    "pgcluster_rendered_objects_total",
    "Objects produced by dry-run renders",
    ["kind"],
)
CLUSTERS_TOTAL = Gauge(
    "pgcluster_clusters_total",
    "Current PostgresCluster resources",
    ["phase"],
)


def update_gauges():
    try:
        items = list_clusters()
    except (ApiException, ConfigException) as e:
        logger.warning(f"Cannot refresh cluster gauges: {e}")
        return
    counts = {}
    for item in items:
        phase = (item.get("status") or {}).get("phase", "Pending")
        counts[phase] = counts.get(phase, 0) + 1
    for phase in PHASES:
        CLUSTERS_TOTAL.labels(phase=phase).set(counts.get(phase, 0))


def _parse_cluster(item: dict) -> ClusterResponse:
    """Convert a raw PostgresCluster dict into a ClusterResponse model."""
    meta = item.get("metadata", {})
    spec = item.get("spec") or {}
    status = item.get("status") or {}
    return ClusterResponse(
        name=meta["name"],
        namespace=meta.get("namespace", ""),
        phase=status.get("phase", "Pending"),
        message=status.get("message"),
        instanceSets=[s.get("name", "00") for s in spec.get("instanceSets") or [{}]],
        lastUpdated=status.get("lastUpdated"),
        retryCount=status.get("retryCount", 0),
        conditions=[ClusterCondition(**c) for c in status.get("conditions", [])],
        activityLog=[ActivityLogEntry(**a) for a in status.get("activityLog", [])],
    )


def _read_cluster(namespace: str, name: str) -> dict:
    try:
        item = get_cluster(namespace, name)
    except ApiException as e:
        logger.error(f"Failed to read cluster {namespace}/{name}: {e}")
        raise HTTPException(status_code=502, detail=f"Kubernetes API error: {e.reason}")
    if item is None:
        raise HTTPException(status_code=404, detail=f"Cluster '{namespace}/{name}' not found")
    return item


# =========================================================================
# REST Endpoints
# =========================================================================

@router.get("", response_model=ClusterListResponse)
@limiter.limit(settings.RATE_LIMIT)
async def list_clusters_endpoint(
    request: Request,
    namespace: Optional[str] = Query(None, description="Only clusters in this namespace"),
):
    """List PostgresCluster resources, optionally scoped to one namespace."""
    try:
        items = list_clusters(namespace)
    except ApiException as e:
        logger.error(f"Failed to list clusters: {e}")
        raise HTTPException(status_code=502, detail=f"Kubernetes API error: {e.reason}")
    clusters = [_parse_cluster(item) for item in items]
    return ClusterListResponse(clusters=clusters, total=len(clusters))


@router.post("/render", response_model=RenderResponse,
             responses={422: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def render_cluster_endpoint(cluster: ClusterSpec, request: Request):
    """Render the manifests a cluster spec produces. Nothing is applied."""
    try:
        intents = generate_cluster_intents(cluster, Taxonomy.default())
    except SpecInvalid as e:
        RENDERS.labels(result="invalid").inc()
        logger.info(f"Render rejected for {cluster.namespace}/{cluster.name}: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    objects = []
    for intent in intents:
        objects.append(RenderedObject(kind=intent.kind.value, name=intent.name, manifest=intent.manifest()))
        RENDERED_OBJECTS.labels(kind=intent.kind.value).inc()
    RENDERS.labels(result="ok").inc()
    return RenderResponse(
        cluster=cluster.name,
        namespace=cluster.namespace,
        objects=objects,
        total=len(objects),
    )


@router.get("/{namespace}/{name}", response_model=ClusterResponse,
            responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_cluster_endpoint(namespace: str, name: str, request: Request):
    """Get one cluster and its status."""
    return _parse_cluster(_read_cluster(namespace, name))


@router.get("/{namespace}/{name}/events")
@limiter.limit(settings.RATE_LIMIT)
async def get_cluster_events(namespace: str, name: str, request: Request):
    """
    Get activity log for a cluster.
    Sources: CR status (always available) + Redis Stream (if connected).
    """
    cluster = _parse_cluster(_read_cluster(namespace, name))
    events = [a.model_dump() for a in cluster.activityLog]
    events.extend(read_events(namespace, name))
    return {"cluster": f"{namespace}/{name}", "events": events}
