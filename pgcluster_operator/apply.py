"""
Apply/reconcile engine.

For one cluster and its full intent set:
  1. Apply every intent (create if absent, patch owned fields if drifted,
     leave alone if already matching). Overlay keys recorded as written by
     an earlier pass but no longer intended are removed. Bounded fan-out via
     a thread pool.
  2. Prune objects this cluster controls that are no longer intended,
     found by listing each kind with the cluster's taxonomy selector.

A failed object never aborts the pass; every outcome is recorded and the
aggregate verdict is derived from the whole set. Nothing is cached between
passes: every pass re-reads live state.
"""
import copy
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from pgcluster_operator.config import settings
from pgcluster_operator.errors import (
    DecodeError, ForeignObject, ObjectNotFound, OperatorError, PassCancelled,
)
from pgcluster_operator.intents import ResourceIntent, decode, metadata_paths
from pgcluster_operator.models import OwnerReference, ResourceKind, Verdict
from pgcluster_operator.naming import Taxonomy
from pgcluster_operator.store import ObjectStore

logger = logging.getLogger("pgcluster.apply")


class ApplyStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    PRUNED = "pruned"
    FAILED = "failed"


@dataclass
class ObjectOutcome:
    kind: ResourceKind
    name: str
    status: ApplyStatus
    error: Optional[Exception] = None

    @property
    def retriable(self) -> bool:
        if self.error is None:
            return True
        return getattr(self.error, "retriable", False)

    def __str__(self) -> str:
        text = f"{self.kind.value}/{self.name}: {self.status.value}"
        if self.error is not None:
            text += f" ({self.error})"
        return text


@dataclass
class ReconcileOutcome:
    """Per-object results of one pass plus the aggregate verdict."""

    results: list = field(default_factory=list)
    cancelled: bool = False
    spec_error: Optional[Exception] = None

    @classmethod
    def fatal(cls, error: Exception) -> "ReconcileOutcome":
        return cls(spec_error=error)

    @property
    def failures(self) -> list:
        return [r for r in self.results if r.status is ApplyStatus.FAILED]

    @property
    def mutations(self) -> list:
        return [r for r in self.results if r.status in (ApplyStatus.APPLIED, ApplyStatus.PRUNED)]

    def by_status(self, status: ApplyStatus) -> list:
        return [r for r in self.results if r.status is status]

    @property
    def verdict(self) -> Verdict:
        if self.spec_error is not None:
            return Verdict.FATAL_SPEC_ERROR
        failures = self.failures
        if any(not f.retriable for f in failures):
            return Verdict.FATAL_SPEC_ERROR
        if failures or self.cancelled:
            return Verdict.TRANSIENT_ERROR
        if self.mutations:
            return Verdict.PROGRESSING
        return Verdict.CONVERGED

    def summary(self) -> str:
        if self.spec_error is not None:
            return f"Invalid spec: {self.spec_error}"
        return (
            f"{len(self.by_status(ApplyStatus.APPLIED))} applied, "
            f"{len(self.by_status(ApplyStatus.UNCHANGED))} unchanged, "
            f"{len(self.by_status(ApplyStatus.PRUNED))} pruned, "
            f"{len(self.failures)} failed"
        )


class PassContext:
    """Cancellation signal and deadline for one pass.

    Once cancelled, in-flight store calls finish but no new ones start.
    """

    def __init__(self, timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._deadline = clock() + timeout if timeout is not None else None
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def check(self, what: str) -> None:
        if self.cancelled:
            raise PassCancelled(f"Pass cancelled before {what}")


# ---------------------------------------------------------------------------
# Owned-field comparison
# ---------------------------------------------------------------------------

# Lists the API server merges by key instead of replacing.
_LIST_MERGE_KEYS = {"ownerReferences": "uid"}


def owned_fields(manifest: dict) -> dict:
    """The parts of a manifest this operator manages. Status and any
    server-populated metadata are left out."""
    meta = manifest.get("metadata", {})
    owned_meta = {
        key: meta[key]
        for key in ("labels", "annotations", "ownerReferences")
        if meta.get(key)
    }
    owned = {"metadata": owned_meta}
    if "spec" in manifest:
        owned["spec"] = copy.deepcopy(manifest["spec"])
    return owned


def is_subset(desired, live, key: Optional[str] = None) -> bool:
    """True when every value in ``desired`` is present and equal in ``live``.

    Extra keys in ``live`` (server defaults) are ignored; a ``None`` in
    ``desired`` requires the key to be absent. Lists compare element-wise and
    must match in length, except keyed lists (owner references), where each
    desired entry must be found by its key.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        for name, value in desired.items():
            if value is None:
                if live.get(name) is not None:
                    return False
            elif name not in live or not is_subset(value, live[name], name):
                return False
        return True
    if isinstance(desired, list):
        if not isinstance(live, list):
            return False
        merge_key = _LIST_MERGE_KEYS.get(key)
        if merge_key is not None:
            by_key = {item.get(merge_key): item for item in live if isinstance(item, dict)}
            return all(
                isinstance(d, dict) and d.get(merge_key) in by_key and is_subset(d, by_key[d.get(merge_key)])
                for d in desired
            )
        if len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


# ---------------------------------------------------------------------------
# Managed overlay keys
# ---------------------------------------------------------------------------

def _metadata_at(manifest: dict, path: tuple, create: bool = False) -> Optional[dict]:
    node = manifest
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    if not isinstance(node, dict):
        return None
    if create:
        return node.setdefault("metadata", {})
    return node.get("metadata")


def managed_keys(manifest: dict, kind: ResourceKind, record_key: str) -> dict:
    """Label and annotation keys of every metadata level in ``manifest``."""
    record = {}
    for level, path in metadata_paths(kind).items():
        meta = _metadata_at(manifest, path) or {}
        record[level] = {
            "labels": sorted(meta.get("labels") or {}),
            "annotations": sorted(k for k in meta.get("annotations") or {} if k != record_key),
        }
    return record


def stamp_managed_keys(manifest: dict, kind: ResourceKind, record_key: str) -> None:
    """Record the keys this manifest sets, so a later pass can remove the ones it drops."""
    record = managed_keys(manifest, kind, record_key)
    meta = manifest.setdefault("metadata", {})
    annotations = dict(meta.get("annotations") or {})
    annotations[record_key] = json.dumps(record, sort_keys=True, separators=(",", ":"))
    meta["annotations"] = annotations


def previous_managed_keys(live: dict, record_key: str) -> dict:
    raw = ((live.get("metadata") or {}).get("annotations") or {}).get(record_key)
    if not raw:
        return {}
    try:
        record = json.loads(raw)
    except ValueError:
        logger.warning(f"Ignoring unreadable {record_key} annotation")
        return {}
    return record if isinstance(record, dict) else {}


def drop_stale_metadata(patch: dict, live: dict, kind: ResourceKind, record_key: str) -> list:
    """Null out keys the operator wrote last time but no longer intends.

    Keys the operator never recorded are left alone. Returns the removed
    keys as ``level:field/key`` strings.
    """
    previous = previous_managed_keys(live, record_key)
    current = managed_keys(patch, kind, record_key)
    removed = []
    for level, path in metadata_paths(kind).items():
        before = previous.get(level)
        if not isinstance(before, dict):
            continue
        live_meta = _metadata_at(live, path) or {}
        for fld in ("labels", "annotations"):
            present = live_meta.get(fld) or {}
            stale = sorted(
                k for k in set(before.get(fld) or []) - set(current[level][fld])
                if k in present
            )
            if not stale:
                continue
            target = _metadata_at(patch, path, create=True)
            block = dict(target.get(fld) or {})
            for k in stale:
                block[k] = None
                removed.append(f"{level}:{fld}/{k}")
            target[fld] = block
    return removed


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ApplyEngine:
    def __init__(
        self,
        store: ObjectStore,
        taxonomy: Optional[Taxonomy] = None,
        max_workers: Optional[int] = None,
    ):
        self.store = store
        self.taxonomy = taxonomy or Taxonomy.default()
        self.max_workers = max_workers or settings.APPLY_FANOUT

    def apply(
        self,
        owner: OwnerReference,
        namespace: str,
        intents: list,
        context: Optional[PassContext] = None,
    ) -> ReconcileOutcome:
        context = context or PassContext()
        outcome = ReconcileOutcome()

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(self._apply_one, owner, intent, context) for intent in intents]
            outcome.results.extend(f.result() for f in futures)

        if context.cancelled:
            outcome.cancelled = True
            logger.warning(f"Pass for {namespace}/{owner.name} cancelled; skipping prune")
            return outcome

        outcome.results.extend(self._prune(owner, namespace, intents, context))
        outcome.cancelled = context.cancelled

        logger.info(f"Applied {namespace}/{owner.name}: {outcome.summary()}")
        return outcome

    def _apply_one(self, owner: OwnerReference, intent: ResourceIntent, context: PassContext) -> ObjectOutcome:
        try:
            context.check(f"applying {intent}")
            desired = intent.manifest()
            record_key = self.taxonomy.managed_keys
            stamp_managed_keys(desired, intent.kind, record_key)
            live = self.store.get(intent.kind, intent.namespace, intent.name)
            if live is None:
                context.check(f"creating {intent}")
                self.store.create(intent.kind, intent.namespace, desired)
                return ObjectOutcome(intent.kind, intent.name, ApplyStatus.APPLIED)

            observed = decode(live, expected=intent.kind)
            if not observed.controlled_by(owner):
                if observed.controlled_by_other(owner):
                    raise ForeignObject(f"{intent} is controlled by another owner")

            patch = owned_fields(desired)
            removed = drop_stale_metadata(patch, live, intent.kind, record_key)
            if removed:
                logger.info(f"Removing overlay keys from {intent}: {', '.join(removed)}")
            if is_subset(patch, live):
                return ObjectOutcome(intent.kind, intent.name, ApplyStatus.UNCHANGED)

            context.check(f"updating {intent}")
            if observed.resource_version:
                patch["metadata"]["resourceVersion"] = observed.resource_version
            self.store.patch(intent.kind, intent.namespace, intent.name, patch)
            return ObjectOutcome(intent.kind, intent.name, ApplyStatus.APPLIED)
        except OperatorError as e:
            logger.warning(f"Apply failed for {intent}: {e}")
            return ObjectOutcome(intent.kind, intent.name, ApplyStatus.FAILED, e)

    def _prune(
        self,
        owner: OwnerReference,
        namespace: str,
        intents: list,
        context: PassContext,
    ) -> list:
        wanted = {intent.key for intent in intents}
        selector = self.taxonomy.cluster_selector(owner.name)
        results = []

        for kind in ResourceKind:
            try:
                context.check(f"listing {kind.value}")
                live_objects = self.store.list(kind, namespace, selector)
            except OperatorError as e:
                logger.warning(f"Listing {kind.value} for prune failed: {e}")
                results.append(ObjectOutcome(kind, "*", ApplyStatus.FAILED, e))
                continue

            for live in live_objects:
                try:
                    observed = decode(live, expected=kind)
                except DecodeError as e:
                    logger.warning(f"Skipping undecodable {kind.value} during prune: {e}")
                    continue
                if (kind, observed.name) in wanted or not observed.controlled_by(owner):
                    continue
                results.append(self._delete(kind, namespace, observed.name, context))
        return results

    def _delete(self, kind: ResourceKind, namespace: str, name: str, context: PassContext) -> ObjectOutcome:
        try:
            context.check(f"pruning {kind.value}/{name}")
            self.store.delete(kind, namespace, name)
            logger.info(f"Pruned {kind.value} {namespace}/{name}")
        except ObjectNotFound:
            logger.info(f"{kind.value} {namespace}/{name} already gone")
        except OperatorError as e:
            logger.warning(f"Prune failed for {kind.value}/{name}: {e}")
            return ObjectOutcome(kind, name, ApplyStatus.FAILED, e)
        return ObjectOutcome(kind, name, ApplyStatus.PRUNED)
