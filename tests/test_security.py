"""Tests for container hardening."""

from kubernetes import client

from pgcluster_operator.builders import generate_cluster_intents
from pgcluster_operator.security import harden, harden_pod_spec, pod_template


def _assert_hardened(container: client.V1Container):
    ctx = container.security_context
    assert ctx.privileged is False
    assert ctx.read_only_root_filesystem is True
    assert ctx.allow_privilege_escalation is False


class TestHarden:
    def test_plain_container(self):
        _assert_hardened(harden(client.V1Container(name="c", image="img")))

    def test_overrides_permissive_context(self):
        container = client.V1Container(
            name="c",
            image="img",
            security_context=client.V1SecurityContext(
                privileged=True,
                read_only_root_filesystem=False,
                allow_privilege_escalation=True,
                run_as_user=1000,
            ),
        )
        hardened = harden(container)
        _assert_hardened(hardened)
        assert hardened.security_context.run_as_user == 1000

    def test_original_untouched(self):
        container = client.V1Container(
            name="c", image="img", security_context=client.V1SecurityContext(privileged=True),
        )
        harden(container)
        assert container.security_context.privileged is True

    def test_idempotent(self):
        once = harden(client.V1Container(name="c", image="img"))
        twice = harden(once)
        assert once.security_context == twice.security_context


class TestPodSpec:
    def test_init_containers_hardened(self):
        spec = client.V1PodSpec(
            containers=[client.V1Container(name="main", image="img")],
            init_containers=[client.V1Container(name="init", image="img")],
        )
        hardened = harden_pod_spec(spec)
        _assert_hardened(hardened.containers[0])
        _assert_hardened(hardened.init_containers[0])

    def test_pod_template_omits_empty_annotations(self):
        template = pod_template(
            {"a": "1"}, {}, client.V1PodSpec(containers=[client.V1Container(name="c", image="i")]),
        )
        assert template.metadata.labels == {"a": "1"}
        assert template.metadata.annotations is None
        _assert_hardened(template.spec.containers[0])


class TestGeneratedContainers:
    def test_every_generated_container_is_hardened(self, full_cluster, taxonomy):
        containers = []
        for intent in generate_cluster_intents(full_cluster, taxonomy):
            manifest = intent.manifest()
            spec = manifest["spec"]
            if intent.kind.value == "CronJob":
                pod = spec["jobTemplate"]["spec"]["template"]["spec"]
            elif "template" in spec:
                pod = spec["template"]["spec"]
            else:
                continue
            containers.extend(pod["containers"])
            containers.extend(pod.get("initContainers", []))

        # database + postgres-startup per set, pgbouncer, three pgbackrest jobs
        assert len(containers) == 2 * 2 + 1 + 3
        for container in containers:
            ctx = container["securityContext"]
            assert ctx["privileged"] is False
            assert ctx["readOnlyRootFilesystem"] is True
            assert ctx["allowPrivilegeEscalation"] is False
