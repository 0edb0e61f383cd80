"""
Label taxonomy, selectors and object names.

The taxonomy is a value, not a set of module constants: build one with
``Taxonomy.from_prefix`` (or ``Taxonomy.default()`` from settings) and hand it
to whoever needs reserved keys.
"""
from dataclasses import dataclass, field
from typing import Optional

from kubernetes import client

from pgcluster_operator.config import settings

ROLE_REPLICA = "replica"
ROLE_PGBOUNCER = "pgbouncer"
ROLE_BACKUP = "backup"


@dataclass(frozen=True)
class Taxonomy:
    """Reserved label keys. Values for these are always owner-derived."""

    cluster: str
    instance_set: str
    role: str
    repo: str
    backup_type: str
    # Annotation recording which overlay keys the operator last wrote.
    managed_keys: str = ""

    @classmethod
    def from_prefix(cls, prefix: str) -> "Taxonomy":
        return cls(
            cluster=f"{prefix}/cluster",
            instance_set=f"{prefix}/instance-set",
            role=f"{prefix}/role",
            repo=f"{prefix}/pgbackrest-repo",
            backup_type=f"{prefix}/pgbackrest-cron",
            managed_keys=f"{prefix}/managed-metadata",
        )

    @classmethod
    def default(cls) -> "Taxonomy":
        return cls.from_prefix(settings.LABEL_PREFIX)

    @property
    def reserved_keys(self) -> frozenset:
        return frozenset((self.cluster, self.instance_set, self.role, self.repo, self.backup_type))

    def labels(
        self,
        cluster: str,
        instance_set: Optional[str] = None,
        role: Optional[str] = None,
    ) -> dict[str, str]:
        """Reserved labels for (cluster, [instance set], [role])."""
        labels = {self.cluster: cluster}
        if instance_set is not None:
            labels[self.instance_set] = instance_set
        if role is not None:
            labels[self.role] = role
        return labels

    def backup_labels(self, cluster: str, repo: str, backup_type: str) -> dict[str, str]:
        labels = self.labels(cluster, role=ROLE_BACKUP)
        labels[self.repo] = repo
        labels[self.backup_type] = backup_type
        return labels

    def cluster_selector(self, cluster: str) -> "Selector":
        return Selector(match_labels={self.cluster: cluster})

    def backup_selector(self, cluster: str) -> "Selector":
        """Everything backup-related for a cluster, whatever the repository."""
        return Selector(match_labels={self.cluster: cluster}, exists=(self.repo,))


@dataclass(frozen=True)
class Selector:
    """Label query: exact-match requirements plus key-existence requirements."""

    match_labels: dict[str, str] = field(default_factory=dict)
    exists: tuple = ()

    def matches(self, labels: Optional[dict]) -> bool:
        labels = labels or {}
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        return all(key in labels for key in self.exists)

    def to_label_selector(self) -> str:
        """Render in the API server's ``labelSelector`` query syntax."""
        parts = [f"{k}={v}" for k, v in sorted(self.match_labels.items())]
        parts += sorted(self.exists)
        return ",".join(parts)

    def to_v1(self) -> client.V1LabelSelector:
        expressions = [
            client.V1LabelSelectorRequirement(key=key, operator="Exists")
            for key in sorted(self.exists)
        ]
        return client.V1LabelSelector(
            match_labels=dict(self.match_labels) or None,
            match_expressions=expressions or None,
        )


# ---------------------------------------------------------------------------
# Object names
# ---------------------------------------------------------------------------

def replica_service_name(cluster: str) -> str:
    return f"{cluster}-replicas"


def pgbouncer_name(cluster: str) -> str:
    return f"{cluster}-pgbouncer"


def instance_set_name(cluster: str, instance_set: str) -> str:
    return f"{cluster}-{instance_set}"


def backup_job_name(cluster: str, repo: str, backup_type_short: str) -> str:
    return f"{cluster}-{repo}-{backup_type_short}"
