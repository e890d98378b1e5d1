"""
Dependency resolution over registered migration sets.

Planning walks the dependency edges depth-first from the target, emitting a
version only after all of its dependencies (post-order), so applying the
plan in list order never violates a dependency. Re-entering a version that
is still on the recursion stack is a cycle.
"""

from strata.migrations.exceptions import (
    CircularDependencyError,
    DependencyNotFoundError,
)
from strata.migrations.models import ExecutionPlan, RiskLevel, VersionedMigrationSet
from strata.migrations.registry import MigrationRegistry


class DependencyResolver:
    def __init__(self, registry: MigrationRegistry):
        self._registry = registry

    def _lookup(self, version: str, required_by: str) -> VersionedMigrationSet:
        if version not in self._registry:
            raise DependencyNotFoundError(
                f"Dependency '{version}' of '{required_by}' is not registered",
                migration_version=required_by,
                dependency=version,
            )
        return self._registry.get(version)

    def plan(self, target: str) -> ExecutionPlan:
        """Compute the ordered plan required to reach ``target``.

        Args:
            target: Version to plan for. Already applied targets are valid;
                whether to skip them is the executor's decision.

        Returns:
            ExecutionPlan with migrations in dependency order and aggregates

        Raises:
            MigrationNotFoundError: If the target is not registered
            DependencyNotFoundError: If a dependency disappeared from the registry
            CircularDependencyError: If the dependency graph has a cycle
        """
        root = self._registry.get(target)
        ordered: list[VersionedMigrationSet] = []
        visited: set[str] = set()
        on_stack: set[str] = set()

        def visit(migration_set: VersionedMigrationSet) -> None:
            version = migration_set.version
            if version in on_stack:
                raise CircularDependencyError(
                    f"Circular dependency detected: {version}",
                    migration_version=version,
                )
            if version in visited:
                return

            visited.add(version)
            on_stack.add(version)
            for dep in migration_set.dependencies:
                visit(self._lookup(dep, version))
            on_stack.discard(version)
            ordered.append(migration_set)

        visit(root)

        plan = ExecutionPlan(
            target=target,
            migrations=ordered,
            dependencies=list(root.dependencies),
            critical_path=self.critical_path(target),
        )
        plan.total_duration = sum(m.estimated_duration for m in ordered)
        plan.risk_level = max_risk([m.risk_level for m in ordered])
        plan.downtime_required = any(m.requires_downtime for m in ordered)
        plan.backup_required = any(m.backup_required for m in ordered)
        return plan

    def critical_path(self, target: str) -> list[str]:
        """Return the deepest dependency chain ending at ``target``.

        Ties between equally deep chains go to the dependency declared first.
        Cycles are reported the same way as in :meth:`plan`.
        """
        memo: dict[str, list[str]] = {}
        on_stack: set[str] = set()

        def longest(migration_set: VersionedMigrationSet) -> list[str]:
            version = migration_set.version
            if version in memo:
                return memo[version]
            if version in on_stack:
                raise CircularDependencyError(
                    f"Circular dependency detected: {version}",
                    migration_version=version,
                )
            on_stack.add(version)
            best: list[str] = []
            for dep in migration_set.dependencies:
                chain = longest(self._lookup(dep, version))
                if len(chain) > len(best):
                    best = chain
            on_stack.discard(version)
            memo[version] = [*best, version]
            return memo[version]

        return longest(self._registry.get(target))


def max_risk(levels: list[RiskLevel]) -> RiskLevel:
    return max(levels, key=lambda level: level.rank, default=RiskLevel.LOW)
