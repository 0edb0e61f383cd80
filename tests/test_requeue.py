"""Tests for the requeue controller."""

from dataclasses import replace

import pytest

from pgcluster_operator.apply import ApplyStatus, ObjectOutcome, ReconcileOutcome
from pgcluster_operator.config import Settings
from pgcluster_operator.errors import ForeignObject, SpecInvalid, StoreUnavailable
from pgcluster_operator.models import ResourceKind, Verdict
from pgcluster_operator.requeue import decide

SETTINGS = replace(
    Settings(),
    PROGRESSING_REQUEUE_SECONDS=15.0,
    TRANSIENT_REQUEUE_SECONDS=0.0,
    MAX_TRANSIENT_RETRIES=5,
)


def _outcome(status: ApplyStatus, error=None) -> ReconcileOutcome:
    return ReconcileOutcome(results=[ObjectOutcome(ResourceKind.STATEFUL_WORKLOAD, "pg-00", status, error)])


class TestDecide:
    def test_converged(self):
        result = decide(_outcome(ApplyStatus.UNCHANGED), settings=SETTINGS)
        assert result.verdict is Verdict.CONVERGED
        assert result.requeue is False
        assert result.after is None
        assert result.condition is None

    def test_converged_but_not_ready_is_progressing(self):
        result = decide(_outcome(ApplyStatus.UNCHANGED), ready=False, settings=SETTINGS)
        assert result.verdict is Verdict.PROGRESSING
        assert result.requeue is True
        assert result.after == 15.0
        assert result.message == "Waiting for workloads to become ready"

    def test_progressing(self):
        result = decide(_outcome(ApplyStatus.APPLIED), settings=SETTINGS)
        assert result.verdict is Verdict.PROGRESSING
        assert result.requeue is True
        assert result.after == 15.0

    def test_transient_requeues_immediately(self):
        result = decide(
            _outcome(ApplyStatus.FAILED, StoreUnavailable("throttled", 429)),
            transient_retries=2,
            settings=SETTINGS,
        )
        assert result.verdict is Verdict.TRANSIENT_ERROR
        assert result.requeue is True
        assert result.after == 0.0
        assert result.condition is None
        assert "throttled" in result.message

    @pytest.mark.parametrize("retries", [5, 9])
    def test_transient_gives_up(self, retries):
        result = decide(
            _outcome(ApplyStatus.FAILED, StoreUnavailable("throttled", 429)),
            transient_retries=retries,
            settings=SETTINGS,
        )
        assert result.verdict is Verdict.TRANSIENT_ERROR
        assert result.requeue is False
        assert result.condition.type == "Reconciled"
        assert result.condition.status == "False"
        assert result.condition.reason == "RetriesExhausted"

    def test_cancelled_pass_is_transient(self):
        outcome = _outcome(ApplyStatus.UNCHANGED)
        outcome.cancelled = True
        result = decide(outcome, settings=SETTINGS)
        assert result.verdict is Verdict.TRANSIENT_ERROR
        assert "pass cancelled" in result.message

    def test_fatal_spec(self):
        result = decide(ReconcileOutcome.fatal(SpecInvalid("Duplicate instance set name(s): a")), settings=SETTINGS)
        assert result.verdict is Verdict.FATAL_SPEC_ERROR
        assert result.requeue is False
        assert result.condition.type == "SpecValid"
        assert result.condition.status == "False"
        assert "Duplicate instance set" in result.condition.message

    def test_fatal_object_failure(self):
        result = decide(_outcome(ApplyStatus.FAILED, ForeignObject("taken")), settings=SETTINGS)
        assert result.verdict is Verdict.FATAL_SPEC_ERROR
        assert result.requeue is False
        assert "taken" in result.message

    def test_fatal_ignores_readiness(self):
        result = decide(ReconcileOutcome.fatal(SpecInvalid("bad")), ready=False, settings=SETTINGS)
        assert result.verdict is Verdict.FATAL_SPEC_ERROR
