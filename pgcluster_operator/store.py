"""
Object store access.

``ObjectStore`` is the CRUD + list surface the apply engine needs. The
production implementation wraps the kubernetes client and translates its
exceptions into the operator's error classes:

  404          → ObjectNotFound
  409          → StoreConflict     (retriable)
  429 / 5xx    → StoreUnavailable  (retriable)
  connection   → StoreUnavailable  (retriable)
  anything else→ StoreError        (not retriable)
"""
import logging
from typing import Optional, Protocol

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException

from pgcluster_operator.config import settings
from pgcluster_operator.errors import (
    ObjectNotFound, StoreConflict, StoreError, StoreUnavailable,
)
from pgcluster_operator.intents import to_manifest
from pgcluster_operator.models import ResourceKind
from pgcluster_operator.naming import Selector

logger = logging.getLogger("pgcluster.store")

STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"


class ObjectStore(Protocol):
    def get(self, kind: ResourceKind, namespace: str, name: str) -> Optional[dict]:
        """Return the live object, or None if it does not exist."""

    def create(self, kind: ResourceKind, namespace: str, body: dict) -> dict:
        ...

    def patch(self, kind: ResourceKind, namespace: str, name: str, body: dict) -> dict:
        """Strategic merge patch: maps merge and a None value removes the key;
        owner references merge by uid. A stale metadata.resourceVersion in
        ``body`` raises StoreConflict."""

    def delete(self, kind: ResourceKind, namespace: str, name: str) -> None:
        """Raises ObjectNotFound if already gone."""

    def list(self, kind: ResourceKind, namespace: str, selector: Selector) -> list[dict]:
        ...


# ---------------------------------------------------------------------------
# Kubernetes client helpers
# ---------------------------------------------------------------------------

_k8s_loaded = False


def _ensure_k8s():
    """Load Kubernetes config exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    if settings.IN_CLUSTER:
        config.load_incluster_config()
    else:
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config(config_file=settings.KUBECONFIG or None)
    _k8s_loaded = True


def core_api() -> client.CoreV1Api:
    _ensure_k8s()
    return client.CoreV1Api()


def apps_api() -> client.AppsV1Api:
    _ensure_k8s()
    return client.AppsV1Api()


def batch_api() -> client.BatchV1Api:
    _ensure_k8s()
    return client.BatchV1Api()


def custom_api() -> client.CustomObjectsApi:
    _ensure_k8s()
    return client.CustomObjectsApi()


def translate_api_exception(e: ApiException, what: str) -> StoreError:
    status = e.status or 0
    message = f"{what}: {status} {e.reason}"
    if status == 404:
        return ObjectNotFound(message, status)
    if status == 409:
        return StoreConflict(message, status)
    if status == 429 or status >= 500:
        return StoreUnavailable(message, status)
    return StoreError(message, status)


# Which API group client and method suffix serve each kind.
_KIND_APIS = {
    ResourceKind.NETWORK_SERVICE: ("core", "namespaced_service"),
    ResourceKind.STATEFUL_WORKLOAD: ("apps", "namespaced_stateful_set"),
    ResourceKind.STATELESS_WORKLOAD: ("apps", "namespaced_deployment"),
    ResourceKind.SCHEDULED_JOB: ("batch", "namespaced_cron_job"),
}
assert set(_KIND_APIS) == set(ResourceKind)


class KubernetesStore:
    """ObjectStore backed by the Kubernetes API server."""

    def __init__(self, apis: Optional[dict] = None, request_timeout: Optional[float] = None):
        self._apis = apis
        self._timeout = request_timeout if request_timeout is not None else settings.REQUEST_TIMEOUT

    def _api(self, kind: ResourceKind):
        if self._apis is None:
            self._apis = {"core": core_api(), "apps": apps_api(), "batch": batch_api()}
        group, _ = _KIND_APIS[kind]
        return self._apis[group]

    def _call(self, kind: ResourceKind, verb: str, what: str, **kwargs):
        _, suffix = _KIND_APIS[kind]
        method = getattr(self._api(kind), f"{verb}_{suffix}")
        try:
            return method(_request_timeout=self._timeout, **kwargs)
        except ApiException as e:
            raise translate_api_exception(e, what) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise StoreUnavailable(f"{what}: {e}") from e

    def _to_dict(self, kind: ResourceKind, obj) -> dict:
        data = to_manifest(obj)
        data.setdefault("apiVersion", kind.api_version)
        data.setdefault("kind", kind.value)
        return data

    def get(self, kind, namespace, name):
        try:
            obj = self._call(kind, "read", f"get {kind.value}/{name}", name=name, namespace=namespace)
        except ObjectNotFound:
            return None
        return self._to_dict(kind, obj)

    def create(self, kind, namespace, body):
        name = body.get("metadata", {}).get("name", "")
        obj = self._call(kind, "create", f"create {kind.value}/{name}", namespace=namespace, body=body)
        logger.info(f"Created {kind.value} {namespace}/{name}")
        return self._to_dict(kind, obj)

    def patch(self, kind, namespace, name, body):
        obj = self._call(
            kind, "patch", f"patch {kind.value}/{name}",
            name=name, namespace=namespace, body=body, _content_type=STRATEGIC_MERGE_PATCH,
        )
        logger.info(f"Patched {kind.value} {namespace}/{name}")
        return self._to_dict(kind, obj)

    def delete(self, kind, namespace, name):
        self._call(
            kind, "delete", f"delete {kind.value}/{name}",
            name=name, namespace=namespace, propagation_policy="Background",
        )
        logger.info(f"Deleted {kind.value} {namespace}/{name}")

    def list(self, kind, namespace, selector):
        result = self._call(
            kind, "list", f"list {kind.value}",
            namespace=namespace, label_selector=selector.to_label_selector(),
        )
        return [self._to_dict(kind, item) for item in result.items]


# ---------------------------------------------------------------------------
# PostgresCluster resources
# ---------------------------------------------------------------------------

def list_clusters(namespace: Optional[str] = None) -> list[dict]:
    api = custom_api()
    if namespace:
        result = api.list_namespaced_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, namespace, settings.CRD_PLURAL
        )
    else:
        result = api.list_cluster_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL
        )
    return result.get("items", [])


def get_cluster(namespace: str, name: str) -> Optional[dict]:
    api = custom_api()
    try:
        return api.get_namespaced_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, namespace, settings.CRD_PLURAL, name
        )
    except ApiException as e:
        if e.status == 404:
            return None
        raise
