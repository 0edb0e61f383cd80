"""
One reconciliation pass for one cluster: build intents → apply → verdict.

The ClusterSpec is handed in fresh by the caller every pass; nothing here
survives between passes.
"""
import logging
from dataclasses import replace
from typing import Optional

from pgcluster_operator.apply import ApplyEngine, PassContext, ReconcileOutcome
from pgcluster_operator.builders import generate_cluster_intents
from pgcluster_operator.config import Settings, settings as default_settings
from pgcluster_operator.errors import OperatorError, SpecInvalid
from pgcluster_operator.models import ClusterSpec
from pgcluster_operator.naming import Taxonomy
from pgcluster_operator.readiness import workloads_ready
from pgcluster_operator.requeue import RequeueResult, decide
from pgcluster_operator.store import ObjectStore

logger = logging.getLogger("pgcluster.reconciler")


class Reconciler:
    def __init__(
        self,
        store: ObjectStore,
        taxonomy: Optional[Taxonomy] = None,
        settings: Settings = default_settings,
    ):
        self.store = store
        self.settings = settings
        self.taxonomy = taxonomy or Taxonomy.from_prefix(settings.LABEL_PREFIX)
        self.engine = ApplyEngine(store, self.taxonomy, max_workers=settings.APPLY_FANOUT)

    def run_pass(self, cluster: ClusterSpec, context: Optional[PassContext] = None) -> ReconcileOutcome:
        """Build the full intent set and apply it. A SpecInvalid stops the pass
        before anything is applied or pruned."""
        try:
            intents = generate_cluster_intents(cluster, self.taxonomy)
        except SpecInvalid as e:
            logger.error(f"Cluster {cluster.namespace}/{cluster.name} has an invalid spec: {e}")
            return ReconcileOutcome.fatal(e)

        if context is None:
            context = PassContext(timeout=self.settings.PASS_DEADLINE)
        return self.engine.apply(cluster.owner_reference(), cluster.namespace, intents, context)

    def reconcile(
        self,
        cluster: ClusterSpec,
        transient_retries: int = 0,
        context: Optional[PassContext] = None,
        observe_readiness: bool = False,
    ) -> RequeueResult:
        outcome = self.run_pass(cluster, context)

        ready = True
        if observe_readiness and not outcome.failures and outcome.spec_error is None:
            try:
                ready, reason = workloads_ready(self.store, cluster, self.taxonomy)
            except OperatorError as e:
                ready, reason = False, str(e)
            if not ready:
                logger.info(f"Cluster {cluster.namespace}/{cluster.name} not ready: {reason}")

        result = decide(outcome, ready=ready, transient_retries=transient_retries, settings=self.settings)
        result = replace(result, outcome=outcome)
        logger.info(
            f"Cluster {cluster.namespace}/{cluster.name}: {result.verdict.value} "
            f"(requeue={result.requeue}, after={result.after})"
        )
        return result
