"""
Container hardening.

``pod_template`` is the only way builders construct a pod template, and it
hardens every container and init container on the way through. There is no
switch to turn this off.
"""
import copy
from typing import Optional

from kubernetes import client


def harden(container: client.V1Container) -> client.V1Container:
    """Return a copy of ``container`` with the fixed hardening profile applied.

    Idempotent; other security context fields are preserved.
    """
    hardened = copy.deepcopy(container)
    ctx = hardened.security_context or client.V1SecurityContext()
    ctx.privileged = False
    ctx.read_only_root_filesystem = True
    ctx.allow_privilege_escalation = False
    hardened.security_context = ctx
    return hardened


def harden_pod_spec(spec: client.V1PodSpec) -> client.V1PodSpec:
    hardened = copy.deepcopy(spec)
    hardened.containers = [harden(c) for c in (spec.containers or [])]
    if spec.init_containers:
        hardened.init_containers = [harden(c) for c in spec.init_containers]
    return hardened


def pod_template(
    labels: dict,
    annotations: dict,
    spec: client.V1PodSpec,
) -> client.V1PodTemplateSpec:
    return client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(
            labels=dict(labels),
            annotations=_or_none(annotations),
        ),
        spec=harden_pod_spec(spec),
    )


def _or_none(mapping: dict) -> Optional[dict]:
    return dict(mapping) if mapping else None
