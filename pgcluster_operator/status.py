"""
Status writers for the PostgresCluster resource: conditions, activity log
and the phase derived from a requeue decision.
"""
from datetime import datetime, timezone

from pgcluster_operator.models import Verdict
from pgcluster_operator.requeue import RequeueResult

# Activity log max entries in CR status (etcd size constraint)
ACTIVITY_LOG_MAX = 15

PHASES = {
    Verdict.CONVERGED: "Ready",
    Verdict.PROGRESSING: "Progressing",
    Verdict.TRANSIENT_ERROR: "Retrying",
    Verdict.FATAL_SPEC_ERROR: "Failed",
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def set_condition(conditions: list, ctype: str, status: str, reason: str, message: str):
    """Upsert a condition in a conditions list.

    lastTransitionTime only moves when the status value actually changes.
    """
    for c in conditions:
        if c.get("type") == ctype:
            if c.get("status") != status:
                c["lastTransitionTime"] = utc_now()
            c["status"] = status
            c["reason"] = reason
            c["message"] = message
            return
    conditions.append({
        "type": ctype,
        "status": status,
        "reason": reason,
        "message": message,
        "lastTransitionTime": utc_now(),
    })


def add_activity(activity_log: list, event_type: str, message: str):
    """Append an event to the activity log ring buffer."""
    activity_log.append({
        "timestamp": utc_now(),
        "event": event_type,
        "message": message,
    })
    # Keep only the last N entries (etcd size constraint)
    while len(activity_log) > ACTIVITY_LOG_MAX:
        activity_log.pop(0)


def apply_result(status: dict, result: RequeueResult, generation: int, retry_count: int) -> dict:
    """
    Build the status patch for one pass.

    Conditions:
      - Reconciled  (last pass applied cleanly)
      - SpecValid   (False only for FatalSpecError)
      - Ready       (Converged)
    """
    conditions = [dict(c) for c in status.get("conditions", [])]
    activity_log = [dict(a) for a in status.get("activityLog", [])]
    verdict = result.verdict

    if verdict is Verdict.FATAL_SPEC_ERROR:
        set_condition(conditions, "SpecValid", "False", "InvalidSpec", result.message[:200])
    else:
        set_condition(conditions, "SpecValid", "True", "Valid", "Specification accepted")

    if result.condition is not None:
        c = result.condition
        set_condition(conditions, c.type, c.status, c.reason, c.message)
    elif verdict is Verdict.TRANSIENT_ERROR:
        set_condition(conditions, "Reconciled", "False", "Retrying", result.message[:200])
    else:
        set_condition(conditions, "Reconciled", "True", verdict.value, result.message[:200])

    if verdict is Verdict.CONVERGED:
        set_condition(conditions, "Ready", "True", "Converged", "All objects applied and ready")
    else:
        set_condition(conditions, "Ready", "False", verdict.value, result.message[:200])

    phase = PHASES[verdict]
    if verdict is Verdict.TRANSIENT_ERROR and not result.requeue:
        phase = "Failed"

    if status.get("phase") != phase:
        add_activity(activity_log, phase.upper(), result.message[:150])

    return {
        "phase": phase,
        "message": result.message[:200],
        "conditions": conditions,
        "activityLog": activity_log,
        "retryCount": retry_count,
        "observedGeneration": generation,
        "lastUpdated": utc_now(),
    }
