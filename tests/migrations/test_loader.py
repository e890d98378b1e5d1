"""Tests for migration set and validation rule files."""

import pytest
import yaml

from strata.migrations.checksum import checksum_of
from strata.migrations.exceptions import MigrationDiscoveryError
from strata.migrations.loader import (
    discover,
    dump_set,
    load_rules,
    load_set,
    render_template,
    seal_file,
)
from strata.migrations.models import ErrorHandling, RiskLevel


@pytest.fixture
def migrations_dir(tmp_path, make_set):
    directory = tmp_path / "migrations"
    directory.mkdir()
    (directory / "1.10.0_later.yaml").write_text(dump_set(make_set("1.10.0", dependencies=["1.2.0"])))
    (directory / "1.2.0_first.yml").write_text(
        dump_set(make_set("1.2.0", risk_level="high", backup_required=True))
    )
    (directory / "_draft.yaml").write_text("not: [valid")
    (directory / "README.md").write_text("ignored")
    return directory


class TestDiscover:
    def test_discover_sorted(self, migrations_dir):
        migration_sets = discover(migrations_dir)

        assert [s.version for s in migration_sets] == ["1.2.0", "1.10.0"]
        assert migration_sets[0].risk_level == RiskLevel.HIGH
        assert migration_sets[0].backup_required is True
        assert migration_sets[1].dependencies == ["1.2.0"]

    def test_round_trip_keeps_checksum_valid(self, migrations_dir):
        for migration_set in discover(migrations_dir):
            assert migration_set.checksum == checksum_of(migration_set)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(MigrationDiscoveryError):
            discover(tmp_path / "nope")

    def test_malformed_yaml(self, migrations_dir):
        (migrations_dir / "2.0.0_bad.yaml").write_text("version: [unclosed")
        with pytest.raises(MigrationDiscoveryError):
            discover(migrations_dir)

    def test_invalid_set(self, migrations_dir):
        (migrations_dir / "2.0.0_bad.yaml").write_text("version: '2.0.0'\nsteps: []\n")
        with pytest.raises(MigrationDiscoveryError) as exc_info:
            discover(migrations_dir)
        assert exc_info.value.migration_version == "2.0.0"

    def test_duplicate_version(self, migrations_dir, make_set):
        (migrations_dir / "1.2.0_again.yaml").write_text(dump_set(make_set("1.2.0")))
        with pytest.raises(MigrationDiscoveryError):
            discover(migrations_dir)


class TestAuthoring:
    def test_hand_written_file(self, tmp_path):
        path = tmp_path / "1.0.0.yaml"
        path.write_text(
            """
version: "1.0.0"
description: Create users table
steps:
  - id: create_users
    script: CREATE TABLE users (id INTEGER PRIMARY KEY);
    rollback_script: DROP TABLE users;
  - id: backfill
    kind: data
    script: UPDATE users SET id = id LIMIT :batch_size;
    batch_size: 500
    error_handling: retry
rollback_script: DROP TABLE IF EXISTS users;
"""
        )

        migration_set = load_set(path)

        assert migration_set.checksum == ""
        assert migration_set.steps[1].batch_size == 500
        assert migration_set.steps[1].error_handling == ErrorHandling.RETRY

        sealed = seal_file(path)
        assert sealed.checksum == checksum_of(sealed)
        assert load_set(path).checksum == sealed.checksum

    def test_render_template_is_sealed(self, tmp_path):
        content = render_template("2.0.0", "add orders")
        data = yaml.safe_load(content)

        assert data["version"] == "2.0.0"
        assert data["description"] == "add orders"
        assert len(data["steps"]) == 1

        path = tmp_path / "2.0.0_add_orders.yaml"
        path.write_text(content)
        migration_set = load_set(path)
        assert migration_set.checksum == checksum_of(migration_set)


class TestLoadRules:
    def test_load_rules_mapping(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            """
rules:
  - name: no_orphans
    category: referential
    query: SELECT COUNT(*) AS count FROM orders WHERE user_id NOT IN (SELECT id FROM users)
    expected_result: {count: 0}
    critical: true
  - name: fresh
    query: SELECT 1 AS ok
    expected_result: {ok: 1}
    severity: warning
"""
        )

        rules = load_rules(path)

        assert [r.name for r in rules] == ["no_orphans", "fresh"]
        assert rules[0].critical is True
        assert rules[0].expected_result == {"count": 0}
        assert rules[1].severity == "warning"

    def test_load_rules_list(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("- name: one\n  query: SELECT 1\n")
        assert len(load_rules(path)) == 1

    def test_invalid_rule(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("rules:\n  - name: no_query\n")
        with pytest.raises(MigrationDiscoveryError):
            load_rules(path)
