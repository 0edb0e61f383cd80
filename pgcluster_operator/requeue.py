"""
Requeue controller: turns the outcome of one pass into the loop's next move.

  Converged       → no requeue
  Progressing     → requeue after a bounded interval
  TransientError  → requeue immediately, up to MAX_TRANSIENT_RETRIES, then
                    stop and surface a condition
  FatalSpecError  → no requeue, surface a persistent condition

Never blocks; waiting is the caller's job.
"""
from dataclasses import dataclass, field
from typing import Optional

from pgcluster_operator.apply import ReconcileOutcome
from pgcluster_operator.config import Settings, settings as default_settings
from pgcluster_operator.models import ClusterCondition, Verdict


@dataclass(frozen=True)
class RequeueResult:
    verdict: Verdict
    requeue: bool
    after: Optional[float] = None
    # Set when the verdict must be shown to the user as a persistent condition.
    condition: Optional[ClusterCondition] = None
    message: str = ""
    outcome: Optional[ReconcileOutcome] = field(default=None, compare=False, repr=False)


def decide(
    outcome: ReconcileOutcome,
    ready: bool = True,
    transient_retries: int = 0,
    settings: Settings = default_settings,
) -> RequeueResult:
    """
    ``ready`` is the readiness observer's view of the cluster's workloads;
    ``transient_retries`` counts consecutive TransientError passes before this one.
    """
    verdict = outcome.verdict
    if verdict is Verdict.CONVERGED and not ready:
        verdict = Verdict.PROGRESSING
    message = outcome.summary()

    if verdict is Verdict.CONVERGED:
        return RequeueResult(verdict, requeue=False, message=message)

    if verdict is Verdict.PROGRESSING:
        if not outcome.mutations:
            message = "Waiting for workloads to become ready"
        return RequeueResult(
            verdict, requeue=True, after=settings.PROGRESSING_REQUEUE_SECONDS, message=message,
        )

    if verdict is Verdict.TRANSIENT_ERROR:
        details = "; ".join(str(f) for f in outcome.failures[:5]) or "pass cancelled"
        if transient_retries >= settings.MAX_TRANSIENT_RETRIES:
            return RequeueResult(
                verdict,
                requeue=False,
                condition=ClusterCondition(
                    type="Reconciled",
                    status="False",
                    reason="RetriesExhausted",
                    message=f"Gave up after {transient_retries} retries: {details}"[:500],
                ),
                message=message,
            )
        return RequeueResult(
            verdict, requeue=True, after=settings.TRANSIENT_REQUEUE_SECONDS,
            message=f"{message}: {details}",
        )

    if verdict is Verdict.FATAL_SPEC_ERROR:
        if outcome.spec_error is not None:
            details = str(outcome.spec_error)
        else:
            details = "; ".join(str(f) for f in outcome.failures if not f.retriable)
        return RequeueResult(
            verdict,
            requeue=False,
            condition=ClusterCondition(
                type="SpecValid",
                status="False",
                reason="InvalidSpec",
                message=details[:500],
            ),
            message=details,
        )

    raise AssertionError(f"Unhandled verdict {verdict}")
