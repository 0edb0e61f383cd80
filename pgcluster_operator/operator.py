"""
PostgresCluster Operator — kopf handlers.

Architecture:
  PostgresCluster CR → Operator watches → Reconcile pass:
    1. Parse the resource into a ClusterSpec (fresh every pass)
    2. Build every child intent and apply it (create / patch / leave alone)
    3. Prune child objects the cluster controls but no longer intends
    4. Observe workload readiness
    5. Write status → Ready / Progressing / Retrying / Failed

  Requeue:
    Progressing    → TemporaryError(delay=PROGRESSING_REQUEUE_SECONDS)
    TransientError → TemporaryError(delay=TRANSIENT_REQUEUE_SECONDS), bounded
    FatalSpecError → PermanentError (status says why)

  Delete:
    Child objects carry a controller owner reference, so the API server's
    garbage collector removes them. The operator only drops its event stream.

  Drift Detection (Timer):
    Re-runs the pass on Ready clusters and records what had to be healed.
"""
import logging

import kopf
from pydantic import ValidationError

from pgcluster_operator.config import settings as cfg
from pgcluster_operator.errors import OperatorError
from pgcluster_operator.events import clear_stream, publish_event
from pgcluster_operator.models import ClusterSpec, Verdict
from pgcluster_operator.readiness import workloads_ready
from pgcluster_operator.reconciler import Reconciler
from pgcluster_operator.status import utc_now, add_activity, apply_result, set_condition
from pgcluster_operator.store import KubernetesStore

logger = logging.getLogger("pgcluster.operator")

_reconciler = None


def get_reconciler() -> Reconciler:
    """One Reconciler (and store) per operator process."""
    global _reconciler
    if _reconciler is None:
        _reconciler = Reconciler(KubernetesStore())
    return _reconciler


def _describe_validation_error(e: ValidationError) -> str:
    errors = e.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()))
    return f"Invalid spec: {len(errors)} validation error(s); {where}: {first.get('msg', '')}"


# ---------------------------------------------------------------------------
# Kopf operator settings
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **kwargs):
    settings.posting.enabled = True
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=cfg.CRD_GROUP)
    # Handlers for one object are serialized by kopf; this bounds the pool across clusters.
    settings.execution.max_workers = cfg.MAX_PARALLEL_RECONCILES
    logger.info(
        f"PostgresCluster Operator started (max_workers={cfg.MAX_PARALLEL_RECONCILES}, "
        f"crd={cfg.CRD_PLURAL}.{cfg.api_version}, label_prefix={cfg.LABEL_PREFIX})"
    )


# ---------------------------------------------------------------------------
# CREATE / UPDATE / RESUME handler — one reconciliation pass
# ---------------------------------------------------------------------------

@kopf.on.create(cfg.CRD_GROUP, cfg.CRD_VERSION, cfg.CRD_PLURAL)
@kopf.on.update(cfg.CRD_GROUP, cfg.CRD_VERSION, cfg.CRD_PLURAL)
@kopf.on.resume(cfg.CRD_GROUP, cfg.CRD_VERSION, cfg.CRD_PLURAL)
def reconcile_cluster(body, name, namespace, status, patch, logger, **kwargs):
    """
    Reconcile a PostgresCluster to its desired state.

    Idempotent: a pass over an already-converged cluster changes nothing.
    The status patch is always filled in before any kopf error is raised.
    """
    status = dict(status or {})
    retries = status.get("retryCount", 0)

    try:
        cluster = ClusterSpec.from_resource(body)
    except ValidationError as e:
        message = _describe_validation_error(e)
        conditions = [dict(c) for c in status.get("conditions", [])]
        activity_log = [dict(a) for a in status.get("activityLog", [])]
        set_condition(conditions, "SpecValid", "False", "InvalidSpec", message[:200])
        set_condition(conditions, "Ready", "False", Verdict.FATAL_SPEC_ERROR.value, message[:200])
        add_activity(activity_log, "SPEC_INVALID", message[:150])
        patch.status["phase"] = "Failed"
        patch.status["message"] = message[:200]
        patch.status["conditions"] = conditions
        patch.status["activityLog"] = activity_log
        patch.status["retryCount"] = 0
        patch.status["observedGeneration"] = body.get("metadata", {}).get("generation", 0)
        patch.status["lastUpdated"] = utc_now()
        logger.error(f"Cluster {namespace}/{name}: {message}")
        publish_event(namespace, name, "SPEC_INVALID", message[:150], "Failed")
        raise kopf.PermanentError(message)

    result = get_reconciler().reconcile(cluster, transient_retries=retries, observe_readiness=True)

    retry_count = retries + 1 if result.verdict is Verdict.TRANSIENT_ERROR else 0
    new_status = apply_result(status, result, cluster.generation, retry_count)
    for key, value in new_status.items():
        patch.status[key] = value
    publish_event(namespace, name, result.verdict.value.upper(), result.message[:150], new_status["phase"])

    if result.requeue:
        logger.info(f"Cluster {namespace}/{name}: {result.verdict.value}, requeue in {result.after}s")
        raise kopf.TemporaryError(f"{result.verdict.value}: {result.message[:200]}", delay=result.after)

    if result.verdict is Verdict.FATAL_SPEC_ERROR:
        logger.error(f"Cluster {namespace}/{name}: {result.message}")
        raise kopf.PermanentError(result.message[:500])

    if result.verdict is Verdict.TRANSIENT_ERROR:
        logger.error(f"Cluster {namespace}/{name}: giving up after {retries} retries")
        raise kopf.PermanentError(result.condition.message if result.condition else result.message)

    logger.info(f"Cluster {namespace}/{name} is Ready")
    return {"verdict": result.verdict.value}


# ---------------------------------------------------------------------------
# DELETE handler — children are garbage-collected via owner references
# ---------------------------------------------------------------------------

@kopf.on.delete(cfg.CRD_GROUP, cfg.CRD_VERSION, cfg.CRD_PLURAL, optional=True)
def delete_cluster(name, namespace, logger, **kwargs):
    logger.info(f"Cluster {namespace}/{name} deleted; children follow via owner references")
    publish_event(namespace, name, "DELETED", f"Cluster {namespace}/{name} deleted", "Deleted")
    clear_stream(namespace, name)


# ---------------------------------------------------------------------------
# TIMER — periodic pass for drift detection & self-healing
# ---------------------------------------------------------------------------

@kopf.timer(
    cfg.CRD_GROUP, cfg.CRD_VERSION, cfg.CRD_PLURAL,
    interval=cfg.HEALTH_CHECK_INTERVAL, idle=cfg.HEALTH_CHECK_INTERVAL,
)
def check_cluster_drift(body, name, namespace, status, patch, logger, **kwargs):
    """
    For Ready clusters: re-run the pass. Any object the pass had to create,
    patch or prune is drift; it is healed by the pass itself and recorded
    as a DriftDetected condition. Workload health is recorded separately.
    """
    status = dict(status or {})
    if status.get("phase") != "Ready":
        return

    try:
        cluster = ClusterSpec.from_resource(body)
    except ValidationError as e:
        logger.warning(f"Cluster {namespace}/{name}: skipping drift check, {_describe_validation_error(e)}")
        return

    reconciler = get_reconciler()
    result = reconciler.reconcile(cluster)
    outcome = result.outcome
    conditions = [dict(c) for c in status.get("conditions", [])]
    activity_log = [dict(a) for a in status.get("activityLog", [])]

    mutations = outcome.mutations if outcome is not None else []
    if mutations:
        drift = "; ".join(str(m) for m in mutations)
        logger.warning(f"Cluster {namespace}/{name}: drift detected, {drift}")
        add_activity(activity_log, "DRIFT_DETECTED", f"Drift: {drift}"[:150])
        publish_event(namespace, name, "DRIFT_DETECTED", f"Drift: {drift}"[:150], "Ready")
        set_condition(conditions, "DriftDetected", "True", "ResourceDrift", drift[:200])
    else:
        set_condition(conditions, "DriftDetected", "False", "NoDrift", "All objects match the spec")

    if result.verdict in (Verdict.TRANSIENT_ERROR, Verdict.FATAL_SPEC_ERROR):
        set_condition(conditions, "Reconciled", "False", result.verdict.value, result.message[:200])
        logger.error(f"Drift check failed for cluster {namespace}/{name}: {result.message}")

    try:
        ready, reason = workloads_ready(reconciler.store, cluster, reconciler.taxonomy)
    except OperatorError as e:
        ready, reason = False, str(e)
    if ready:
        set_condition(conditions, "HealthCheck", "True", "Healthy", reason)
    else:
        logger.warning(f"Cluster {namespace}/{name}: {reason}")
        set_condition(conditions, "HealthCheck", "False", "WorkloadDegraded", reason[:200])

    patch.status["conditions"] = conditions
    patch.status["activityLog"] = activity_log
    patch.status["lastUpdated"] = utc_now()
