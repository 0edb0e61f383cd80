"""
Readiness observer.

Lives outside the per-pass core: the reconciler never waits on pods. The
operator asks ``workloads_ready`` after a pass, and tests or tooling that
must wait use ``poll``, which gives up with PollTimeout instead of blocking
forever.
"""
import logging
import time
from typing import Callable

from pgcluster_operator.errors import DecodeError, PollTimeout
from pgcluster_operator.intents import decode
from pgcluster_operator.models import ClusterSpec, ResourceKind
from pgcluster_operator.naming import Taxonomy
from pgcluster_operator.store import ObjectStore

logger = logging.getLogger("pgcluster.readiness")

_WORKLOAD_KINDS = (ResourceKind.STATEFUL_WORKLOAD, ResourceKind.STATELESS_WORKLOAD)


def poll(
    condition: Callable[[], bool],
    interval: float,
    timeout: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Call ``condition`` every ``interval`` seconds until it returns True.

    Raises PollTimeout once ``timeout`` seconds have passed.
    """
    start = clock()
    while True:
        if condition():
            return
        elapsed = clock() - start
        if elapsed >= timeout:
            raise PollTimeout(f"Condition not met after {elapsed:.1f}s", elapsed)
        sleep(min(interval, timeout - elapsed))


def workloads_ready(store: ObjectStore, cluster: ClusterSpec, taxonomy: Taxonomy) -> tuple[bool, str]:
    """
    Check if every workload the cluster owns has all its replicas ready.
    Returns (all_ready, reason_string).
    """
    owner = cluster.owner_reference()
    selector = taxonomy.cluster_selector(cluster.name)
    found = 0
    for kind in _WORKLOAD_KINDS:
        for live in store.list(kind, cluster.namespace, selector):
            try:
                observed = decode(live, expected=kind)
            except DecodeError as e:
                return False, str(e)
            if not observed.controlled_by(owner):
                continue
            found += 1
            wanted = observed.replicas if observed.replicas is not None else 1
            if observed.ready_replicas < wanted:
                return False, f"{kind.value} {observed.name}: {observed.ready_replicas}/{wanted} replicas ready"
    if not found:
        return True, "No workloads to wait for"
    return True, "All workloads ready"
