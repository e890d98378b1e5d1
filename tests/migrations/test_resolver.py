"""Tests for dependency resolution and execution planning."""

import pytest

from strata.migrations.exceptions import (
    CircularDependencyError,
    DependencyNotFoundError,
    MigrationNotFoundError,
)
from strata.migrations.ledger import HistoryLedger
from strata.migrations.models import RiskLevel
from strata.migrations.registry import MigrationRegistry
from strata.migrations.resolver import DependencyResolver, max_risk


@pytest.fixture
def registry():
    return MigrationRegistry(HistoryLedger())


class TestDependencyResolver:
    def test_plan_single_set(self, registry, make_set):
        registry.register(make_set("1.0.0", estimated_duration=5))
        plan = DependencyResolver(registry).plan("1.0.0")

        assert plan.versions == ["1.0.0"]
        assert plan.total_duration == 5
        assert plan.dependencies == []
        assert plan.critical_path == ["1.0.0"]

    def test_plan_orders_dependencies_first(self, registry, make_set):
        registry.register(make_set("1.0.0"))
        registry.register(make_set("1.1.0", dependencies=["1.0.0"]))
        registry.register(make_set("1.2.0", dependencies=["1.0.0"]))
        registry.register(make_set("2.0.0", dependencies=["1.2.0", "1.1.0"]))

        plan = DependencyResolver(registry).plan("2.0.0")

        # Every set appears after all of its dependencies, exactly once
        position = {v: i for i, v in enumerate(plan.versions)}
        assert len(plan.versions) == len(set(plan.versions)) == 4
        for migration_set in plan.migrations:
            for dep in migration_set.dependencies:
                assert position[dep] < position[migration_set.version]
        assert plan.versions[-1] == "2.0.0"
        assert plan.dependencies == ["1.2.0", "1.1.0"]

    def test_plan_is_idempotent(self, registry, make_set):
        registry.register(make_set("1.0.0"))
        registry.register(make_set("1.1.0", dependencies=["1.0.0"]))
        registry.register(make_set("1.2.0", dependencies=["1.1.0", "1.0.0"]))
        resolver = DependencyResolver(registry)

        first = resolver.plan("1.2.0")
        second = resolver.plan("1.2.0")

        assert first.versions == second.versions
        assert first.critical_path == second.critical_path

    def test_plan_aggregates(self, registry, make_set):
        registry.register(make_set("1.0.0", estimated_duration=2, risk_level="medium"))
        registry.register(
            make_set("1.1.0", dependencies=["1.0.0"], estimated_duration=3, requires_downtime=True)
        )
        registry.register(
            make_set("1.2.0", dependencies=["1.1.0"], estimated_duration=1.5, risk_level="high", backup_required=True)
        )

        plan = DependencyResolver(registry).plan("1.2.0")

        assert plan.total_duration == 6.5
        assert plan.risk_level == RiskLevel.HIGH
        assert plan.downtime_required is True
        assert plan.backup_required is True

    def test_plan_unknown_target(self, registry):
        with pytest.raises(MigrationNotFoundError):
            DependencyResolver(registry).plan("missing")

    def test_cycle_detected(self, registry, make_set):
        """A -> B -> C -> A, only reachable through forced replacement."""
        registry.register(make_set("A"))
        registry.register(make_set("B", dependencies=["A"]))
        registry.register(make_set("C", dependencies=["B"]))
        registry.register(make_set("A", dependencies=["C"]), force=True)

        with pytest.raises(CircularDependencyError):
            DependencyResolver(registry).plan("C")

    def test_self_dependency_is_a_cycle(self, registry, make_set):
        registry.register(make_set("A"))
        registry.register(make_set("A", dependencies=["A"]), force=True)

        with pytest.raises(CircularDependencyError):
            DependencyResolver(registry).plan("A")

    def test_missing_dependency_at_plan_time(self, registry, make_set):
        registry.register(make_set("1.0.0"))
        registry.register(make_set("1.1.0", dependencies=["1.0.0"]))
        # Replace 1.1.0 with a version that points at an unregistered dependency
        registry._sets["1.1.0"] = make_set("1.1.0", dependencies=["0.9.0"])

        with pytest.raises(DependencyNotFoundError) as exc_info:
            DependencyResolver(registry).plan("1.1.0")
        assert exc_info.value.dependency == "0.9.0"

    def test_critical_path_is_longest_chain(self, registry, make_set):
        registry.register(make_set("base"))
        registry.register(make_set("short", dependencies=["base"]))
        registry.register(make_set("mid", dependencies=["base"]))
        registry.register(make_set("deep", dependencies=["mid"]))
        registry.register(make_set("top", dependencies=["short", "deep"]))

        assert DependencyResolver(registry).critical_path("top") == ["base", "mid", "deep", "top"]

    def test_max_risk(self):
        assert max_risk([]) == RiskLevel.LOW
        assert max_risk([RiskLevel.MEDIUM, RiskLevel.CRITICAL, RiskLevel.LOW]) == RiskLevel.CRITICAL
