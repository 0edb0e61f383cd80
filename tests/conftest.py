"""Shared fixtures: an in-memory object store and cluster factories."""

import copy
import threading
from typing import Any, List

import pytest

from pgcluster_operator.errors import ObjectNotFound, StoreConflict
from pgcluster_operator.models import ClusterSpec, ResourceKind
from pgcluster_operator.naming import Taxonomy

PREFIX = "postgres.pgcluster.io"


# Lists the API server merges by key under a strategic merge patch.
LIST_MERGE_KEYS = {"ownerReferences": "uid"}


def merge_patch(target: Any, patch: Any, key: str = "") -> Any:
    """Strategic merge patch as the API server applies it to our objects:
    dicts merge recursively, None deletes, owner references merge by uid,
    anything else replaces."""
    merge_key = LIST_MERGE_KEYS.get(key)
    if merge_key and isinstance(patch, list) and isinstance(target, list):
        result = copy.deepcopy(target)
        for item in patch:
            index = next((i for i, t in enumerate(result) if t.get(merge_key) == item.get(merge_key)), None)
            if index is None:
                result.append(copy.deepcopy(item))
            else:
                result[index] = merge_patch(result[index], item)
        return result
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for name, value in patch.items():
        if value is None:
            result.pop(name, None)
        else:
            result[name] = merge_patch(result.get(name), value, name)
    return result


class FakeStore:
    """In-memory ObjectStore with strategic-merge patching and resourceVersion checks.

    ``fail`` maps (verb, kind, name) to an exception raised on that call;
    name "*" matches any object of the kind.
    """

    def __init__(self):
        self.objects: dict[tuple, dict] = {}
        self.fail: dict[tuple, Exception] = {}
        self.writes: list[tuple] = []
        self.calls: list[tuple] = []
        self._version = 0
        self._lock = threading.Lock()

    def _check(self, verb: str, kind: ResourceKind, name: str):
        self.calls.append((verb, kind, name))
        for key in ((verb, kind, name), (verb, kind, "*")):
            if key in self.fail:
                raise self.fail[key]

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def put(self, manifest: dict, namespace: str = "ns1") -> dict:
        """Seed a live object directly, bypassing write tracking."""
        kind = ResourceKind(manifest["kind"])
        obj = copy.deepcopy(manifest)
        meta = obj.setdefault("metadata", {})
        meta.setdefault("namespace", namespace)
        meta["resourceVersion"] = self._next_version()
        self.objects[(kind, meta["namespace"], meta["name"])] = obj
        return copy.deepcopy(obj)

    def get(self, kind, namespace, name):
        with self._lock:
            self._check("get", kind, name)
            obj = self.objects.get((kind, namespace, name))
            return copy.deepcopy(obj) if obj is not None else None

    def create(self, kind, namespace, body):
        name = body["metadata"]["name"]
        with self._lock:
            self._check("create", kind, name)
            if (kind, namespace, name) in self.objects:
                raise StoreConflict(f"{kind.value}/{name} already exists", 409)
            obj = copy.deepcopy(body)
            obj["metadata"]["namespace"] = namespace
            obj["metadata"]["resourceVersion"] = self._next_version()
            self.objects[(kind, namespace, name)] = obj
            self.writes.append(("create", kind, name))
            return copy.deepcopy(obj)

    def patch(self, kind, namespace, name, body):
        with self._lock:
            self._check("patch", kind, name)
            live = self.objects.get((kind, namespace, name))
            if live is None:
                raise ObjectNotFound(f"{kind.value}/{name} not found", 404)
            body = copy.deepcopy(body)
            expected = body.get("metadata", {}).pop("resourceVersion", None)
            if expected is not None and expected != live["metadata"]["resourceVersion"]:
                raise StoreConflict(f"{kind.value}/{name} was modified", 409)
            obj = merge_patch(live, body)
            obj["metadata"]["resourceVersion"] = self._next_version()
            self.objects[(kind, namespace, name)] = obj
            self.writes.append(("patch", kind, name))
            return copy.deepcopy(obj)

    def delete(self, kind, namespace, name):
        with self._lock:
            self._check("delete", kind, name)
            if self.objects.pop((kind, namespace, name), None) is None:
                raise ObjectNotFound(f"{kind.value}/{name} not found", 404)
            self.writes.append(("delete", kind, name))

    def list(self, kind, namespace, selector):
        with self._lock:
            self._check("list", kind, "*")
            return [
                copy.deepcopy(obj)
                for (k, ns, _), obj in sorted(self.objects.items(), key=lambda item: item[0][2])
                if k is kind and ns == namespace and selector.matches(obj["metadata"].get("labels"))
            ]

    # --- test helpers ---

    def names(self, kind: ResourceKind) -> List[str]:
        return sorted(name for (k, _, name) in self.objects if k is kind)

    def find(self, kind: ResourceKind, name: str, namespace: str = "ns1") -> dict:
        return self.objects[(kind, namespace, name)]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def taxonomy() -> Taxonomy:
    return Taxonomy.from_prefix(PREFIX)


@pytest.fixture
def make_cluster():
    """Factory for ClusterSpec objects; keyword arguments use the resource's camelCase keys."""

    def _make(name: str = "pg", namespace: str = "ns1", **spec) -> ClusterSpec:
        body = {
            "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}", "generation": 1},
            "spec": spec,
        }
        return ClusterSpec.from_resource(body)

    return _make


@pytest.fixture
def full_cluster(make_cluster) -> ClusterSpec:
    """Two instance sets, one repository with every backup type on @yearly, pgbouncer enabled."""
    return make_cluster(
        instanceSets=[
            {"name": "a", "metadata": {"labels": {"tier": "a"}}},
            {"name": "b", "replicas": 2, "metadata": {"labels": {"tier": "b"}}},
        ],
        backups={
            "repos": [{
                "name": "repo1",
                "metadata": {"labels": {"repo-label": "r1"}, "annotations": {"repo-note": "n1"}},
                "backupSchedules": {
                    "full": "@yearly",
                    "differential": "@yearly",
                    "incremental": "@yearly",
                },
            }],
        },
        proxy={"pgBouncer": {"metadata": {"labels": {"proxy-label": "p1"}}}},
    )
