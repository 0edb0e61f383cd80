"""Tests for the metadata cascade resolver."""

import logging

from pgcluster_operator.metadata import resolve
from pgcluster_operator.models import BackupSpec, Metadata, RepoSpec


class TestResolve:
    def test_reserved_only(self, taxonomy):
        reserved = taxonomy.labels("pg", role="replica")
        resolved = resolve(taxonomy, reserved)
        assert resolved.labels == reserved
        assert resolved.annotations == {}

    def test_cluster_overlay_applied(self, taxonomy):
        reserved = taxonomy.labels("pg")
        cluster = Metadata(labels={"team": "db"}, annotations={"note": "x"})
        resolved = resolve(taxonomy, reserved, cluster)
        assert resolved.labels == {"team": "db", taxonomy.cluster: "pg"}
        assert resolved.annotations == {"note": "x"}

    def test_scope_overlay_wins(self, taxonomy):
        cluster = Metadata(labels={"tier": "gold", "team": "db"}, annotations={"n": "cluster"})
        scope = Metadata(labels={"tier": "silver"}, annotations={"n": "scope"})
        resolved = resolve(taxonomy, taxonomy.labels("pg"), cluster, scope)
        assert resolved.labels["tier"] == "silver"
        assert resolved.labels["team"] == "db"
        assert resolved.annotations == {"n": "scope"}

    def test_labels_and_annotations_independent(self, taxonomy):
        scope = Metadata(annotations={"tier": "from-annotation"})
        cluster = Metadata(labels={"tier": "from-label"})
        resolved = resolve(taxonomy, {}, cluster, scope)
        assert resolved.labels == {"tier": "from-label"}
        assert resolved.annotations == {"tier": "from-annotation"}

    def test_reserved_key_in_overlay_dropped(self, taxonomy, caplog):
        reserved = taxonomy.labels("pg", role="replica")
        overlay = Metadata(labels={taxonomy.cluster: "hijack", taxonomy.role: "primary", "ok": "1"})
        with caplog.at_level(logging.WARNING, logger="pgcluster.metadata"):
            resolved = resolve(taxonomy, reserved, overlay)
        assert resolved.labels[taxonomy.cluster] == "pg"
        assert resolved.labels[taxonomy.role] == "replica"
        assert resolved.labels["ok"] == "1"
        assert "reserved" in caplog.text

    def test_reserved_key_dropped_even_without_reserved_value(self, taxonomy):
        overlay = Metadata(labels={taxonomy.instance_set: "99"})
        resolved = resolve(taxonomy, taxonomy.labels("pg"), overlay)
        assert taxonomy.instance_set not in resolved.labels

    def test_reserved_annotation_keys_kept(self, taxonomy):
        overlay = Metadata(annotations={taxonomy.cluster: "note"})
        resolved = resolve(taxonomy, taxonomy.labels("pg"), overlay)
        assert resolved.annotations == {taxonomy.cluster: "note"}

    def test_inputs_not_mutated(self, taxonomy):
        reserved = taxonomy.labels("pg")
        overlay = Metadata(labels={"a": "1"})
        resolve(taxonomy, reserved, overlay)
        assert reserved == {taxonomy.cluster: "pg"}
        assert overlay.labels == {"a": "1"}


class TestBackupScope:
    def test_repo_overlay_over_backup_overlay(self):
        backups = BackupSpec(
            metadata=Metadata(labels={"shared": "1", "x": "backup"}),
            repos=[RepoSpec(name="repo1", metadata=Metadata(labels={"x": "repo"}))],
        )
        scope = backups.scope_metadata(backups.repos[0])
        assert scope.labels == {"shared": "1", "x": "repo"}

    def test_no_backup_overlay(self):
        repo = RepoSpec(name="repo1", metadata=Metadata(labels={"x": "repo"}))
        assert BackupSpec(repos=[repo]).scope_metadata(repo) is repo.metadata
