"""Tests for the kopf handlers, called directly with an in-memory store."""

import logging
from types import SimpleNamespace

import kopf
import pytest

from pgcluster_operator import operator
from pgcluster_operator.errors import StoreUnavailable
from pgcluster_operator.models import ResourceKind
from pgcluster_operator.reconciler import Reconciler

log = logging.getLogger("test-operator")


def _body(name="pg", namespace="ns1", **spec) -> dict:
    return {
        "apiVersion": "postgres.pgcluster.io/v1beta1",
        "kind": "PostgresCluster",
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}", "generation": 4},
        "spec": spec,
    }


def _call(handler, body, status=None):
    patch = SimpleNamespace(status={})
    meta = body["metadata"]
    result = handler(
        body=body,
        spec=body["spec"],
        name=meta["name"],
        namespace=meta["namespace"],
        status=status or {},
        patch=patch,
        logger=log,
    )
    return result, patch


def _condition(status, ctype):
    return next(c for c in status["conditions"] if c["type"] == ctype)


@pytest.fixture(autouse=True)
def reconciler(store, taxonomy, monkeypatch):
    instance = Reconciler(store, taxonomy)
    monkeypatch.setattr(operator, "get_reconciler", lambda: instance)
    return instance


def _mark_ready(store):
    for kind in (ResourceKind.STATEFUL_WORKLOAD, ResourceKind.STATELESS_WORKLOAD):
        for name in store.names(kind):
            obj = store.find(kind, name)
            obj["status"] = {"readyReplicas": obj["spec"]["replicas"]}


class TestConfigure:
    def test_settings(self):
        settings = kopf.OperatorSettings()
        operator.configure(settings=settings)
        assert settings.posting.enabled is True
        assert settings.execution.max_workers == operator.cfg.MAX_PARALLEL_RECONCILES
        assert isinstance(settings.persistence.progress_storage, kopf.AnnotationsProgressStorage)


class TestReconcileHandler:
    def test_first_pass_requeues_progressing(self, store):
        with pytest.raises(kopf.TemporaryError) as excinfo:
            _call(operator.reconcile_cluster, _body())
        assert excinfo.value.delay == operator.cfg.PROGRESSING_REQUEUE_SECONDS
        assert store.names(ResourceKind.STATEFUL_WORKLOAD) == ["pg-00"]

    def test_status_written_before_raising(self, store):
        patch = SimpleNamespace(status={})
        body = _body()
        with pytest.raises(kopf.TemporaryError):
            operator.reconcile_cluster(
                body=body, name="pg", namespace="ns1", status={}, patch=patch, logger=log,
            )
        assert patch.status["phase"] == "Progressing"
        assert patch.status["observedGeneration"] == 4
        assert patch.status["retryCount"] == 0
        assert _condition(patch.status, "Ready")["status"] == "False"

    def test_ready_once_workloads_ready(self, store):
        with pytest.raises(kopf.TemporaryError):
            _call(operator.reconcile_cluster, _body())
        _mark_ready(store)

        result, patch = _call(operator.reconcile_cluster, _body(), status={"phase": "Progressing"})
        assert result == {"verdict": "Converged"}
        assert patch.status["phase"] == "Ready"
        assert _condition(patch.status, "Ready")["status"] == "True"

    def test_schema_error_is_permanent(self, store):
        patch = SimpleNamespace(status={})
        body = _body(instanceSets=[{"name": "a", "replicas": 0}])
        with pytest.raises(kopf.PermanentError):
            operator.reconcile_cluster(
                body=body, name="pg", namespace="ns1", status={}, patch=patch, logger=log,
            )
        assert patch.status["phase"] == "Failed"
        assert "instanceSets" in patch.status["message"]
        assert _condition(patch.status, "SpecValid")["status"] == "False"
        assert store.objects == {}

    def test_invalid_spec_is_permanent(self, store):
        patch = SimpleNamespace(status={})
        body = _body(instanceSets=[{"name": "a"}, {"name": "a"}])
        with pytest.raises(kopf.PermanentError):
            operator.reconcile_cluster(
                body=body, name="pg", namespace="ns1", status={}, patch=patch, logger=log,
            )
        assert patch.status["phase"] == "Failed"
        assert _condition(patch.status, "SpecValid")["reason"] == "InvalidSpec"
        assert store.objects == {}

    def test_transient_failure_counts_retries(self, store):
        store.fail[("create", ResourceKind.STATEFUL_WORKLOAD, "pg-00")] = StoreUnavailable("down", 503)
        patch = SimpleNamespace(status={})
        with pytest.raises(kopf.TemporaryError) as excinfo:
            operator.reconcile_cluster(
                body=_body(), name="pg", namespace="ns1", status={"retryCount": 2}, patch=patch, logger=log,
            )
        assert excinfo.value.delay == operator.cfg.TRANSIENT_REQUEUE_SECONDS
        assert patch.status["phase"] == "Retrying"
        assert patch.status["retryCount"] == 3

    def test_retries_exhausted_is_permanent(self, store):
        store.fail[("create", ResourceKind.STATEFUL_WORKLOAD, "pg-00")] = StoreUnavailable("down", 503)
        patch = SimpleNamespace(status={})
        retries = operator.cfg.MAX_TRANSIENT_RETRIES
        with pytest.raises(kopf.PermanentError):
            operator.reconcile_cluster(
                body=_body(), name="pg", namespace="ns1", status={"retryCount": retries}, patch=patch, logger=log,
            )
        assert patch.status["phase"] == "Failed"
        assert _condition(patch.status, "Reconciled")["reason"] == "RetriesExhausted"


class TestDriftTimer:
    def _converge(self, store):
        with pytest.raises(kopf.TemporaryError):
            _call(operator.reconcile_cluster, _body())
        _mark_ready(store)

    def test_skips_clusters_that_are_not_ready(self, store):
        _, patch = _call(operator.check_cluster_drift, _body(), status={"phase": "Progressing"})
        assert patch.status == {}
        assert store.writes == []

    def test_no_drift(self, store):
        self._converge(store)
        writes = len(store.writes)
        _, patch = _call(operator.check_cluster_drift, _body(), status={"phase": "Ready"})
        assert len(store.writes) == writes
        assert _condition(patch.status, "DriftDetected")["status"] == "False"
        assert _condition(patch.status, "HealthCheck")["status"] == "True"

    def test_heals_deleted_object(self, store):
        self._converge(store)
        del store.objects[(ResourceKind.NETWORK_SERVICE, "ns1", "pg-replicas")]

        _, patch = _call(operator.check_cluster_drift, _body(), status={"phase": "Ready"})
        assert "pg-replicas" in store.names(ResourceKind.NETWORK_SERVICE)
        drift = _condition(patch.status, "DriftDetected")
        assert drift["status"] == "True"
        assert "Service/pg-replicas" in drift["message"]
        assert patch.status["activityLog"][-1]["event"] == "DRIFT_DETECTED"

    def test_degraded_workload(self, store):
        self._converge(store)
        store.find(ResourceKind.STATEFUL_WORKLOAD, "pg-00")["status"] = {"readyReplicas": 0}
        _, patch = _call(operator.check_cluster_drift, _body(), status={"phase": "Ready"})
        assert _condition(patch.status, "HealthCheck")["reason"] == "WorkloadDegraded"


class TestDeleteHandler:
    def test_delete(self):
        operator.delete_cluster(name="pg", namespace="ns1", logger=log)
