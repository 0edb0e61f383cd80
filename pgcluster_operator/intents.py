"""
ResourceIntent (one materialized, not-yet-applied child object) plus the
two conversions the apply engine needs: intent → manifest dict, and
retrieved manifest dict → typed ObservedObject.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kubernetes import client
from pydantic import BaseModel, ValidationError

from pgcluster_operator.errors import DecodeError
from pgcluster_operator.models import OwnerReference, ResourceKind

_api_client: Optional[client.ApiClient] = None


def _serializer() -> client.ApiClient:
    global _api_client
    if _api_client is None:
        _api_client = client.ApiClient()
    return _api_client


def to_manifest(obj: Any) -> dict:
    """Serialize a kubernetes client model into its JSON (camelCase) form."""
    return _serializer().sanitize_for_serialization(obj)


@dataclass
class ResourceIntent:
    kind: ResourceKind
    body: Any
    selector: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.body.metadata.name

    @property
    def namespace(self) -> str:
        return self.body.metadata.namespace

    @property
    def labels(self) -> dict:
        return dict(self.body.metadata.labels or {})

    @property
    def annotations(self) -> dict:
        return dict(self.body.metadata.annotations or {})

    @property
    def owner(self) -> Optional[OwnerReference]:
        refs = self.body.metadata.owner_references or []
        for ref in refs:
            if ref.controller:
                return OwnerReference(
                    api_version=ref.api_version, kind=ref.kind, name=ref.name, uid=ref.uid or "",
                )
        return None

    @property
    def key(self) -> tuple:
        return (self.kind, self.name)

    def manifest(self) -> dict:
        data = to_manifest(self.body)
        data["apiVersion"] = self.kind.api_version
        data["kind"] = self.kind.value
        return data

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"


# ---------------------------------------------------------------------------
# Typed decode of retrieved objects
# ---------------------------------------------------------------------------

class TemplateMeta(BaseModel):
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}


class ObservedObject(BaseModel):
    kind: ResourceKind
    name: str
    namespace: str = ""
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}
    owner_references: List[OwnerReference] = []
    resource_version: str = ""
    replicas: Optional[int] = None
    ready_replicas: int = 0
    # Nested template metadata by nesting level: podTemplate, jobTemplate, jobPodTemplate
    templates: Dict[str, TemplateMeta] = {}

    def controlled_by(self, owner: OwnerReference) -> bool:
        for ref in self.owner_references:
            if not ref.controller or ref.kind != owner.kind or ref.name != owner.name:
                continue
            if ref.uid and owner.uid and ref.uid != owner.uid:
                continue
            return True
        return False

    def controlled_by_other(self, owner: OwnerReference) -> bool:
        return any(ref.controller for ref in self.owner_references) and not self.controlled_by(owner)

    def layers(self) -> Dict[str, Dict[str, str]]:
        """Labels at every nesting level, keyed like ``templates`` plus 'resource'."""
        found = {"resource": self.labels}
        for level, meta in self.templates.items():
            found[level] = meta.labels
        return found

    def annotation_layers(self) -> Dict[str, Dict[str, str]]:
        found = {"resource": self.annotations}
        for level, meta in self.templates.items():
            found[level] = meta.annotations
        return found


# Where the nested templates live, per kind. Every kind must be listed.
_TEMPLATE_PATHS = {
    ResourceKind.NETWORK_SERVICE: {},
    ResourceKind.STATEFUL_WORKLOAD: {"podTemplate": ("spec", "template")},
    ResourceKind.STATELESS_WORKLOAD: {"podTemplate": ("spec", "template")},
    ResourceKind.SCHEDULED_JOB: {
        "jobTemplate": ("spec", "jobTemplate"),
        "jobPodTemplate": ("spec", "jobTemplate", "spec", "template"),
    },
}
assert set(_TEMPLATE_PATHS) == set(ResourceKind)


def metadata_paths(kind: ResourceKind) -> Dict[str, tuple]:
    """Path to every node carrying a metadata block: the object, then its templates."""
    return {"object": (), **_TEMPLATE_PATHS[kind]}


def decode(manifest: dict, expected: Optional[ResourceKind] = None) -> ObservedObject:
    """Decode a retrieved object into an ObservedObject.

    Raises DecodeError when the kind is unknown or does not match ``expected``,
    or when a path the kind requires is missing.
    """
    if not isinstance(manifest, dict):
        raise DecodeError(f"Expected an object mapping, got {type(manifest).__name__}")

    kind_name = manifest.get("kind") or (expected.value if expected else None)
    try:
        kind = ResourceKind(kind_name)
    except ValueError:
        raise DecodeError(f"Unsupported kind {kind_name!r}") from None
    if expected is not None and kind is not expected:
        raise DecodeError(f"Expected {expected.value}, got {kind.value}")

    meta = manifest.get("metadata")
    if not isinstance(meta, dict) or not meta.get("name"):
        raise DecodeError(f"{kind.value} without metadata.name")

    templates = {}
    for level, path in _TEMPLATE_PATHS[kind].items():
        node = _dig(manifest, path)
        if not isinstance(node, dict):
            raise DecodeError(f"{kind.value}/{meta['name']}: missing {'.'.join(path)}")
        templates[level] = node.get("metadata") or {}

    spec = manifest.get("spec") or {}
    status = manifest.get("status") or {}
    try:
        return ObservedObject(
            kind=kind,
            name=meta["name"],
            namespace=meta.get("namespace") or "",
            labels=meta.get("labels") or {},
            annotations=meta.get("annotations") or {},
            owner_references=[
                {**ref, "controller": bool(ref.get("controller"))}
                for ref in meta.get("ownerReferences") or []
            ],
            resource_version=meta.get("resourceVersion") or "",
            replicas=spec.get("replicas"),
            ready_replicas=status.get("readyReplicas") or 0,
            templates={
                level: TemplateMeta(
                    labels=t.get("labels") or {},
                    annotations=t.get("annotations") or {},
                )
                for level, t in templates.items()
            },
        )
    except (ValidationError, AttributeError, TypeError) as e:
        raise DecodeError(f"{kind.value}/{meta['name']}: {e}") from e


def _dig(data: dict, path: tuple) -> Any:
    node: Any = data
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node
