"""
Intent builders: (ClusterSpec, scope) → ResourceIntent.

Every builder is a pure function. Labels and annotations for an object and
for each template nested in it are resolved separately through the metadata
cascade; pod templates are only ever built via ``security.pod_template``.
No builder assumes a sibling object already exists.
"""
from typing import Optional

from kubernetes import client

from pgcluster_operator.config import settings
from pgcluster_operator.intents import ResourceIntent
from pgcluster_operator.metadata import ResolvedMetadata, resolve
from pgcluster_operator.models import (
    BackupType, ClusterSpec, InstanceSetSpec, Metadata, RepoSpec, ResourceKind,
)
from pgcluster_operator.naming import (
    ROLE_PGBOUNCER, ROLE_REPLICA, Taxonomy,
    backup_job_name, instance_set_name, pgbouncer_name, replica_service_name,
)
from pgcluster_operator.security import pod_template
from pgcluster_operator.validation import parse_cron, validate_cluster

DATA_VOLUME = "pgdata"
DATA_MOUNT = "/pgdata"
TMP_VOLUME = "tmp"


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _owner_reference(cluster: ClusterSpec) -> client.V1OwnerReference:
    ref = cluster.owner_reference()
    return client.V1OwnerReference(
        api_version=ref.api_version,
        kind=ref.kind,
        name=ref.name,
        uid=ref.uid,
        controller=True,
        block_owner_deletion=True,
    )


def _object_meta(cluster: ClusterSpec, name: str, resolved: ResolvedMetadata) -> client.V1ObjectMeta:
    return client.V1ObjectMeta(
        name=name,
        namespace=cluster.namespace,
        labels=resolved.labels,
        annotations=resolved.annotations or None,
        owner_references=[_owner_reference(cluster)],
    )


def _template_meta(resolved: ResolvedMetadata) -> client.V1ObjectMeta:
    return client.V1ObjectMeta(
        labels=resolved.labels,
        annotations=resolved.annotations or None,
    )


def _tmp_volume() -> client.V1Volume:
    # Writable scratch space; root filesystems are read-only.
    return client.V1Volume(name=TMP_VOLUME, empty_dir=client.V1EmptyDirVolumeSource(medium="Memory"))


def _tmp_mount() -> client.V1VolumeMount:
    return client.V1VolumeMount(name=TMP_VOLUME, mount_path="/tmp")


def _service(
    cluster: ClusterSpec,
    name: str,
    reserved: dict,
    scope: Optional[Metadata],
    port_name: str,
    port: int,
    taxonomy: Taxonomy,
) -> ResourceIntent:
    resolved = resolve(taxonomy, reserved, cluster.metadata, scope)
    service = client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=_object_meta(cluster, name, resolved),
        spec=client.V1ServiceSpec(
            type="ClusterIP",
            # Selectors are taxonomy-only; overlays never widen them.
            selector=dict(reserved),
            ports=[client.V1ServicePort(
                name=port_name,
                port=port,
                protocol="TCP",
                target_port=port_name,
            )],
        ),
    )
    return ResourceIntent(ResourceKind.NETWORK_SERVICE, service, selector=dict(reserved))


# ---------------------------------------------------------------------------
# Network services
# ---------------------------------------------------------------------------

def generate_replica_service_intent(
    cluster: ClusterSpec, taxonomy: Optional[Taxonomy] = None,
) -> ResourceIntent:
    """Read endpoint spanning every instance set's replicas.

    No pod this operator builds carries role=replica: the HA agent inside the
    database pods labels the current replicas. Until it does, this service
    (and the PgBouncer upstream pointing at it) has no endpoints.
    """
    taxonomy = taxonomy or Taxonomy.default()
    reserved = taxonomy.labels(cluster.name, role=ROLE_REPLICA)
    return _service(
        cluster, replica_service_name(cluster.name), reserved,
        None, "postgres", cluster.port, taxonomy,
    )


def generate_proxy_service_intent(
    cluster: ClusterSpec, taxonomy: Optional[Taxonomy] = None,
) -> Optional[ResourceIntent]:
    taxonomy = taxonomy or Taxonomy.default()
    pgbouncer = cluster.pgbouncer
    if pgbouncer is None:
        return None
    reserved = taxonomy.labels(cluster.name, role=ROLE_PGBOUNCER)
    return _service(
        cluster, pgbouncer_name(cluster.name), reserved,
        pgbouncer.metadata, "pgbouncer", pgbouncer.port, taxonomy,
    )


# ---------------------------------------------------------------------------
# Stateful workloads (one per instance set)
# ---------------------------------------------------------------------------

def generate_instance_set_intent(
    cluster: ClusterSpec,
    instance_set: InstanceSetSpec,
    taxonomy: Optional[Taxonomy] = None,
) -> ResourceIntent:
    """StatefulSet for one instance set.

    serviceName points at the ClusterIP replica service rather than a headless
    one, so pods get no per-pod DNS records; clients connect through the
    role services only.
    """
    taxonomy = taxonomy or Taxonomy.default()
    reserved = taxonomy.labels(cluster.name, instance_set=instance_set.name)
    object_meta = resolve(taxonomy, reserved, cluster.metadata, instance_set.metadata)
    pod_meta = resolve(taxonomy, reserved, cluster.metadata, instance_set.metadata)

    data_mount = client.V1VolumeMount(name=DATA_VOLUME, mount_path=DATA_MOUNT)
    database = client.V1Container(
        name="database",
        image=settings.POSTGRES_IMAGE,
        ports=[client.V1ContainerPort(name="postgres", container_port=cluster.port, protocol="TCP")],
        env=[
            client.V1EnvVar(name="PGPORT", value=str(cluster.port)),
            client.V1EnvVar(name="PGDATA", value=f"{DATA_MOUNT}/data"),
        ],
        volume_mounts=[data_mount, _tmp_mount()],
    )
    startup = client.V1Container(
        name="postgres-startup",
        image=settings.POSTGRES_IMAGE,
        command=["/bin/sh", "-c", f"install -d -m 0700 {DATA_MOUNT}/data"],
        volume_mounts=[data_mount, _tmp_mount()],
    )

    statefulset = client.V1StatefulSet(
        api_version="apps/v1",
        kind="StatefulSet",
        metadata=_object_meta(cluster, instance_set_name(cluster.name, instance_set.name), object_meta),
        spec=client.V1StatefulSetSpec(
            replicas=instance_set.replicas,
            service_name=replica_service_name(cluster.name),
            selector=client.V1LabelSelector(match_labels=dict(reserved)),
            template=pod_template(
                pod_meta.labels,
                pod_meta.annotations,
                client.V1PodSpec(
                    init_containers=[startup],
                    containers=[database],
                    volumes=[_tmp_volume()],
                ),
            ),
            volume_claim_templates=[client.V1PersistentVolumeClaim(
                metadata=client.V1ObjectMeta(name=DATA_VOLUME),
                spec=client.V1PersistentVolumeClaimSpec(
                    access_modes=["ReadWriteOnce"],
                    resources=client.V1VolumeResourceRequirements(
                        requests={"storage": instance_set.data_volume_size},
                    ),
                ),
            )],
        ),
    )
    return ResourceIntent(ResourceKind.STATEFUL_WORKLOAD, statefulset, selector=dict(reserved))


# ---------------------------------------------------------------------------
# Stateless workload (connection-pooling proxy)
# ---------------------------------------------------------------------------

def generate_proxy_intent(
    cluster: ClusterSpec, taxonomy: Optional[Taxonomy] = None,
) -> Optional[ResourceIntent]:
    taxonomy = taxonomy or Taxonomy.default()
    pgbouncer = cluster.pgbouncer
    if pgbouncer is None:
        return None

    reserved = taxonomy.labels(cluster.name, role=ROLE_PGBOUNCER)
    object_meta = resolve(taxonomy, reserved, cluster.metadata, pgbouncer.metadata)
    pod_meta = resolve(taxonomy, reserved, cluster.metadata, pgbouncer.metadata)

    container = client.V1Container(
        name="pgbouncer",
        image=settings.PGBOUNCER_IMAGE,
        ports=[client.V1ContainerPort(name="pgbouncer", container_port=pgbouncer.port, protocol="TCP")],
        env=[
            client.V1EnvVar(name="PGBOUNCER_PORT", value=str(pgbouncer.port)),
            client.V1EnvVar(name="POSTGRESQL_HOST", value=replica_service_name(cluster.name)),
            client.V1EnvVar(name="POSTGRESQL_PORT", value=str(cluster.port)),
        ],
        volume_mounts=[_tmp_mount()],
    )
    deployment = client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=_object_meta(cluster, pgbouncer_name(cluster.name), object_meta),
        spec=client.V1DeploymentSpec(
            replicas=pgbouncer.replicas,
            selector=client.V1LabelSelector(match_labels=dict(reserved)),
            template=pod_template(
                pod_meta.labels,
                pod_meta.annotations,
                client.V1PodSpec(containers=[container], volumes=[_tmp_volume()]),
            ),
        ),
    )
    return ResourceIntent(ResourceKind.STATELESS_WORKLOAD, deployment, selector=dict(reserved))


# ---------------------------------------------------------------------------
# Scheduled backup jobs
# ---------------------------------------------------------------------------

def generate_backup_intents(
    cluster: ClusterSpec,
    repo: RepoSpec,
    repo_index: int = 1,
    taxonomy: Optional[Taxonomy] = None,
) -> list[ResourceIntent]:
    """One CronJob per backup type the repository schedules.

    Raises SpecInvalid on the first schedule that does not parse; no intents
    are returned for the repository in that case.
    """
    taxonomy = taxonomy or Taxonomy.default()
    schedules = repo.backup_schedules
    if schedules is None:
        return []

    scope = cluster.backups.scope_metadata(repo)
    intents = []
    for backup_type in BackupType:
        schedule = schedules.get(backup_type)
        if schedule is None:
            continue
        parse_cron(schedule, where=f"repo {repo.name} {backup_type.value} backup")
        intents.append(_backup_cronjob(cluster, repo, repo_index, backup_type, schedule, scope, taxonomy))
    return intents


def _backup_cronjob(
    cluster: ClusterSpec,
    repo: RepoSpec,
    repo_index: int,
    backup_type: BackupType,
    schedule: str,
    scope: Optional[Metadata],
    taxonomy: Taxonomy,
) -> ResourceIntent:
    reserved = taxonomy.backup_labels(cluster.name, repo.name, backup_type.value)
    object_meta = resolve(taxonomy, reserved, cluster.metadata, scope)
    job_meta = resolve(taxonomy, reserved, cluster.metadata, scope)
    pod_meta = resolve(taxonomy, reserved, cluster.metadata, scope)

    container = client.V1Container(
        name="pgbackrest",
        image=settings.PGBACKREST_IMAGE,
        command=[
            "pgbackrest", "backup",
            "--stanza=db",
            f"--repo={repo_index}",
            f"--type={backup_type.short}",
        ],
        volume_mounts=[_tmp_mount()],
    )
    cronjob = client.V1CronJob(
        api_version="batch/v1",
        kind="CronJob",
        metadata=_object_meta(
            cluster, backup_job_name(cluster.name, repo.name, backup_type.short), object_meta,
        ),
        spec=client.V1CronJobSpec(
            schedule=schedule,
            concurrency_policy="Forbid",
            job_template=client.V1JobTemplateSpec(
                metadata=_template_meta(job_meta),
                spec=client.V1JobSpec(
                    backoff_limit=1,
                    template=pod_template(
                        pod_meta.labels,
                        pod_meta.annotations,
                        client.V1PodSpec(
                            restart_policy="Never",
                            containers=[container],
                            volumes=[_tmp_volume()],
                        ),
                    ),
                ),
            ),
        ),
    )
    return ResourceIntent(ResourceKind.SCHEDULED_JOB, cronjob, selector=dict(reserved))


# ---------------------------------------------------------------------------
# Whole cluster
# ---------------------------------------------------------------------------

def generate_cluster_intents(
    cluster: ClusterSpec, taxonomy: Optional[Taxonomy] = None,
) -> list[ResourceIntent]:
    """Every child object the cluster needs. Raises SpecInvalid before
    building anything if the spec can never be reconciled."""
    taxonomy = taxonomy or Taxonomy.default()
    validate_cluster(cluster)

    intents = [generate_replica_service_intent(cluster, taxonomy)]
    for instance_set in cluster.instance_sets:
        intents.append(generate_instance_set_intent(cluster, instance_set, taxonomy))

    for builder in (generate_proxy_intent, generate_proxy_service_intent):
        intent = builder(cluster, taxonomy)
        if intent is not None:
            intents.append(intent)

    for index, repo in enumerate(cluster.backups.repos, start=1):
        intents.extend(generate_backup_intents(cluster, repo, index, taxonomy))
    return intents
