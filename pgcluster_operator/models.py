"""
Pydantic models for the PostgresCluster spec and for status/API payloads,
plus the closed enums the rest of the operator dispatches on.
"""
from collections.abc import Mapping
from enum import Enum
from typing import Any, Optional, List, Dict

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from pgcluster_operator.config import settings


class ResourceKind(str, Enum):
    """Every child object kind the operator emits. Adding one means adding it
    to each dispatch table keyed by this enum."""

    NETWORK_SERVICE = "Service"
    STATEFUL_WORKLOAD = "StatefulSet"
    STATELESS_WORKLOAD = "Deployment"
    SCHEDULED_JOB = "CronJob"

    @property
    def api_version(self) -> str:
        return _API_VERSIONS[self]


_API_VERSIONS = {
    ResourceKind.NETWORK_SERVICE: "v1",
    ResourceKind.STATEFUL_WORKLOAD: "apps/v1",
    ResourceKind.STATELESS_WORKLOAD: "apps/v1",
    ResourceKind.SCHEDULED_JOB: "batch/v1",
}


class Verdict(str, Enum):
    CONVERGED = "Converged"
    PROGRESSING = "Progressing"
    TRANSIENT_ERROR = "TransientError"
    FATAL_SPEC_ERROR = "FatalSpecError"


class BackupType(str, Enum):
    FULL = "full"
    DIFFERENTIAL = "differential"
    INCREMENTAL = "incremental"

    @property
    def short(self) -> str:
        return {"full": "full", "differential": "diff", "incremental": "incr"}[self.value]


# ---------------------------------------------------------------------------
# Cluster specification
# ---------------------------------------------------------------------------

class _SpecModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Metadata(_SpecModel):
    """User overlay of labels and annotations for one scope."""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)

    def merged(self, other: Optional["Metadata"]) -> "Metadata":
        """Return a copy with ``other`` applied on top (other wins)."""
        if other is None:
            return self.model_copy(deep=True)
        return Metadata(
            labels={**self.labels, **other.labels},
            annotations={**self.annotations, **other.annotations},
        )


class InstanceSetSpec(_SpecModel):
    name: str = Field(
        default="00",
        min_length=1,
        max_length=15,
        pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$",
    )
    replicas: int = Field(default=1, ge=1)
    metadata: Optional[Metadata] = None
    data_volume_size: str = "1Gi"


class BackupSchedules(_SpecModel):
    full: Optional[str] = None
    differential: Optional[str] = None
    incremental: Optional[str] = None

    def get(self, backup_type: BackupType) -> Optional[str]:
        return getattr(self, backup_type.value)


class RepoSpec(_SpecModel):
    name: str = Field(..., pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    metadata: Optional[Metadata] = None
    backup_schedules: Optional[BackupSchedules] = None


class BackupSpec(_SpecModel):
    # Applies to every backup object; a repo overlay is layered on top.
    metadata: Optional[Metadata] = None
    repos: List[RepoSpec] = Field(default_factory=list)

    def scope_metadata(self, repo: RepoSpec) -> Optional[Metadata]:
        if self.metadata is None:
            return repo.metadata
        return self.metadata.merged(repo.metadata)


class PGBouncerSpec(_SpecModel):
    metadata: Optional[Metadata] = None
    replicas: int = Field(default=1, ge=0)
    port: int = Field(default=5432, ge=1, le=65535)


class ProxySpec(_SpecModel):
    pg_bouncer: Optional[PGBouncerSpec] = None


class OwnerReference(_SpecModel):
    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: bool = True
    block_owner_deletion: bool = True


class ClusterSpec(_SpecModel):
    """Desired state of one PostgresCluster, plus its identity."""
    name: str
    namespace: str
    uid: str = ""
    generation: int = 0

    metadata: Optional[Metadata] = None
    instance_sets: List[InstanceSetSpec] = Field(default_factory=lambda: [InstanceSetSpec()])
    backups: BackupSpec = Field(default_factory=BackupSpec)
    proxy: Optional[ProxySpec] = None
    port: int = Field(default=settings.DEFAULT_PORT, ge=1, le=65535)

    @property
    def pgbouncer(self) -> Optional[PGBouncerSpec]:
        return self.proxy.pg_bouncer if self.proxy else None

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(
            api_version=settings.api_version,
            kind=settings.CRD_KIND,
            name=self.name,
            uid=self.uid,
        )

    @classmethod
    def from_resource(cls, body: Mapping) -> "ClusterSpec":
        """Build a ClusterSpec from a raw PostgresCluster resource body."""
        meta = body.get("metadata") or {}
        data = _to_plain(body.get("spec") or {})
        data.update({
            "name": meta.get("name"),
            "namespace": meta.get("namespace"),
            "uid": meta.get("uid") or "",
            "generation": meta.get("generation") or 0,
        })
        return cls.model_validate(data)


def _to_plain(value: Any) -> Any:
    # kopf hands us read-only mapping views; pydantic wants plain containers.
    if isinstance(value, Mapping):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Status / API payloads
# ---------------------------------------------------------------------------

class ClusterCondition(BaseModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    lastTransitionTime: Optional[str] = None


class ActivityLogEntry(BaseModel):
    timestamp: str
    event: str
    message: str = ""


class ClusterResponse(BaseModel):
    """Cluster details returned by the intent API."""
    name: str
    namespace: str
    phase: str = "Pending"
    message: Optional[str] = None
    instanceSets: List[str] = []
    lastUpdated: Optional[str] = None
    retryCount: int = 0
    conditions: List[ClusterCondition] = []
    activityLog: List[ActivityLogEntry] = []


class ClusterListResponse(BaseModel):
    clusters: List[ClusterResponse]
    total: int


class RenderedObject(BaseModel):
    kind: str
    name: str
    manifest: Dict[str, Any]


class RenderResponse(BaseModel):
    cluster: str
    namespace: str
    objects: List[RenderedObject]
    total: int


class ErrorResponse(BaseModel):
    detail: str
    code: str = "UNKNOWN_ERROR"
