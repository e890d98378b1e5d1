"""
CLI commands for the migration framework.

Provides commands for managing versioned migrations including:
- status: Show registered, applied and pending migrations
- plan: Show the execution plan for a target version
- upgrade: Apply pending migrations
- apply: Apply a single migration set
- rollback: Roll back a migration set with its rollback script
- restore / backups: Restore and maintain backups
- validate: Run data validation rules
- export: Export the history ledger
- create / seal: Author migration set files
"""

import asyncio
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from strata.config.environment import Environment, StrataSettings
from strata.config.logging_config import configure_logging

console = Console()


def _ensure_settings_loaded():
    """Ensure environment settings are loaded before command processing.

    This must be called before Click processes envvar options, otherwise
    environment variables from .env files won't be available.
    """
    Environment.load_settings()


def _settings(ctx: click.Context) -> StrataSettings:
    return Environment.settings_model(**ctx.obj)


async def _open_manager(settings: StrataSettings):
    """Build a manager for the configured store and register its migration files."""
    from strata.migrations.manager import MigrationManager

    manager = await MigrationManager.open(settings)
    migrations_dir = settings.migrations_dir.expanduser()
    try:
        if migrations_dir.is_dir():
            manager.load_directory(migrations_dir)
        else:
            console.print(f"[yellow]Migrations directory {migrations_dir} not found[/]")
    except Exception:
        await manager.close()
        raise
    return manager


def _print_result(result) -> None:
    if result.dry_run:
        label = "[cyan]SIMULATED[/]"
    elif result.success:
        label = "[green]✅ OK[/]"
    else:
        label = "[red]❌ FAILED[/]"
    console.print(f"{label} {result.target_id} ({result.duration:.2f}s, {result.records_affected} records affected)")
    if result.rollback_point:
        console.print(f"  Rollback point: {result.rollback_point}")
    for warning in result.warnings:
        console.print(f"  [yellow]⚠ {warning}[/]")
    for error in result.errors:
        step = f" [{error.step_id}]" if error.step_id else ""
        console.print(f"  [red]{error.code}{step}: {error.message}[/]")


@click.group()
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite database file.")
@click.option(
    "--migrations-dir", type=click.Path(path_type=Path), default=None, help="Directory of migration set files."
)
@click.option("--ledger-path", type=click.Path(path_type=Path), default=None, help="History ledger JSON file.")
@click.option("--backup-dir", type=click.Path(path_type=Path), default=None, help="Directory for backup artifacts.")
@click.option("--log-level", type=str, default=None, help="Logging level (DEBUG, INFO, ...).")
@click.pass_context
def cli(ctx, db_path, migrations_dir, ledger_path, backup_dir, log_level):
    """Strata: versioned migrations and backups."""
    _ensure_settings_loaded()
    configure_logging(level=log_level or Environment.get("LOG_LEVEL"))
    ctx.obj = {
        "db_path": db_path,
        "migrations_dir": migrations_dir,
        "ledger_path": ledger_path,
        "backup_dir": backup_dir,
    }


@cli.group("migrations")
def migrations():
    """Manage versioned migrations.

    Migration sets are YAML files in the migrations directory. The history
    ledger records every apply, rollback and restore.
    """
    pass


@migrations.command("status")
@click.pass_context
def status(ctx):
    """Show migration status.

    Displays applied and pending migrations and the most recent executions.
    """

    async def run_status():
        manager = None
        try:
            manager = await _open_manager(_settings(ctx))
            result = manager.status()

            console.print(f"[bold cyan]Registered:[/] {result['total']}")
            console.print(f"[bold cyan]Applied:[/] {len(result['applied'])}")
            console.print(f"[bold cyan]Pending:[/] {len(result['pending'])}")
            console.print(f"[bold cyan]Failed executions:[/] {result['failed']}")
            console.print(f"[bold cyan]Success rate:[/] {result['success_rate']:.0f}%")
            console.print()

            if result["pending"]:
                table = Table(title="Pending Migrations")
                table.add_column("Version", style="cyan")
                table.add_column("Description", style="green")
                for version in result["pending"]:
                    table.add_row(version, manager.registry.get(version).description)
                console.print(table)
                console.print()
            else:
                console.print("[green]No pending migrations - store is up to date[/]")

            if result["recent"]:
                table = Table(title="Recent Executions")
                table.add_column("Target", style="cyan")
                table.add_column("Started", style="yellow")
                table.add_column("Duration (s)", style="blue")
                table.add_column("Result", style="magenta")
                for entry in result["recent"]:
                    table.add_row(
                        entry["target_id"],
                        entry["started_at"],
                        f"{entry['duration']:.2f}",
                        "OK" if entry["success"] else f"FAILED ({len(entry['errors'])} errors)",
                    )
                console.print(table)

        except Exception as e:
            console.print(f"[red]❌ Error getting status: {e}[/]")
            raise SystemExit(1) from e
        finally:
            if manager:
                await manager.close()

    asyncio.run(run_status())


@migrations.command("plan")
@click.argument("target")
@click.pass_context
def plan(ctx, target: str):
    """Show the execution plan for TARGET."""

    async def run_plan():
        manager = None
        try:
            manager = await _open_manager(_settings(ctx))
            execution_plan = manager.plan(target)

            table = Table(title=f"Plan for {target}")
            table.add_column("#", style="blue")
            table.add_column("Version", style="cyan")
            table.add_column("Description", style="green")
            table.add_column("Risk", style="magenta")
            table.add_column("State", style="yellow")
            for i, migration_set in enumerate(execution_plan.migrations, 1):
                state = "applied" if manager.ledger.is_applied(migration_set.version) else "pending"
                table.add_row(
                    str(i), migration_set.version, migration_set.description, migration_set.risk_level.value, state
                )
            console.print(table)
            console.print(f"[bold cyan]Estimated duration:[/] {execution_plan.total_duration:g} min")
            console.print(f"[bold cyan]Risk level:[/] {execution_plan.risk_level.value}")
            console.print(f"[bold cyan]Downtime required:[/] {'yes' if execution_plan.downtime_required else 'no'}")
            console.print(f"[bold cyan]Backup required:[/] {'yes' if execution_plan.backup_required else 'no'}")
            console.print(f"[bold cyan]Critical path:[/] {' → '.join(execution_plan.critical_path)}")

        except Exception as e:
            console.print(f"[red]❌ Planning failed: {e}[/]")
            raise SystemExit(1) from e
        finally:
            if manager:
                await manager.close()

    asyncio.run(run_plan())


def _execution_options(
    dry_run: bool,
    force: bool,
    validate: bool,
    backup: bool,
    timeout: Optional[float],
    batch_size: Optional[int],
):
    from strata.migrations.models import ExecutionOptions

    return ExecutionOptions(
        dry_run=dry_run,
        force=force,
        validate_after=validate,
        backup_before=backup,
        timeout=timeout,
        batch_size=batch_size,
    )


_execution_flags = [
    click.option("--dry-run", is_flag=True, help="Show what would be done without making changes"),
    click.option("--force", is_flag=True, help="Re-apply migrations that are already applied"),
    click.option("--validate", is_flag=True, help="Run validation queries after applying"),
    click.option("--backup", is_flag=True, help="Take a backup even when not required"),
    click.option("--timeout", type=float, default=None, help="Override every step's timeout (seconds)"),
    click.option(
        "--batch-size",
        type=click.IntRange(min=1),
        default=None,
        help="Override the batch size of batched steps",
    ),
]


def execution_flags(func):
    for option in reversed(_execution_flags):
        func = option(func)
    return func


@migrations.command("upgrade")
@click.option("--target", type=str, default=None, help="Target version to migrate to")
@execution_flags
@click.pass_context
def upgrade(
    ctx, target: Optional[str], dry_run: bool, force: bool, validate: bool, backup: bool, timeout, batch_size
):
    """Apply pending migrations.

    Examples:
        # Apply all pending migrations
        strata migrations upgrade

        # Preview what would be done
        strata migrations upgrade --dry-run

        # Migrate up to a specific version
        strata migrations upgrade --target 1.2.0
    """

    async def run_upgrade():
        manager = None
        try:
            manager = await _open_manager(_settings(ctx))
            if dry_run:
                console.print("[cyan]DRY RUN - No changes will be made[/]")
                console.print()

            options = _execution_options(dry_run, force, validate, backup, timeout, batch_size)
            results = await manager.migrate(target, options)
            if not results:
                console.print("[yellow]No migrations to apply - store is up to date[/]")
                return

            for result in results:
                _print_result(result)
            if not all(r.success for r in results):
                raise SystemExit(1)
            console.print(f"[green]✅ Applied {len(results)} migration(s)[/]")

        except SystemExit:
            raise
        except Exception as e:
            console.print(f"[red]❌ Migration failed: {e}[/]")
            raise SystemExit(1) from e
        finally:
            if manager:
                await manager.close()

    asyncio.run(run_upgrade())


@migrations.command("apply")
@click.argument("version")
@execution_flags
@click.pass_context
def apply(ctx, version: str, dry_run: bool, force: bool, validate: bool, backup: bool, timeout, batch_size):
    """Apply the single migration set VERSION.

    Its dependencies must already be applied.
    """

    async def run_apply():
        manager = None
        try:
            manager = await _open_manager(_settings(ctx))
            options = _execution_options(dry_run, force, validate, backup, timeout, batch_size)
            result = await manager.execute(version, options)
            _print_result(result)
            if not result.success:
                raise SystemExit(1)

        except SystemExit:
            raise
        except Exception as e:
            console.print(f"[red]❌ Migration failed: {e}[/]")
            raise SystemExit(1) from e
        finally:
            if manager:
                await manager.close()

    asyncio.run(run_apply())


@migrations.command("rollback")
@click.argument("version")
@click.option("--reason", type=str, default="", help="Why the migration is rolled back")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def rollback(ctx, version: str, reason: str, yes: bool):
    """Roll back VERSION using its rollback script.

    A backup is always taken first. Use with caution in production.
    """
    if not yes:
        if not click.confirm(f"Are you sure you want to roll back {version}? This may cause data loss."):
            console.print("[yellow]Operation cancelled[/]")
            return

    async def run_rollback():
        manager = None
        try:
            manager = await _open_manager(_settings(ctx))
            result = await manager.rollback(version, reason)
            _print_result(result)
            if not result.success:
                raise SystemExit(1)

        except SystemExit:
            raise
        except Exception as e:
            console.print(f"[red]❌ Rollback failed: {e}[/]")
            raise SystemExit(1) from e
        finally:
            if manager:
                await manager.close()

    asyncio.run(run_rollback())


@migrations.command("restore")
@click.argument("backup_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def restore(ctx, backup_id: str, yes: bool):
    """Restore the store from backup BACKUP_ID."""
    if not yes:
        if not click.confirm(f"Restore backup {backup_id}? Current data will be replaced."):
            console.print("[yellow]Operation cancelled[/]")
            return

    async def run_restore():
        manager = None
        try:
            manager = await _open_manager(_settings(ctx))
            result = await manager.restore(backup_id)
            _print_result(result)
            if not result.success:
                raise SystemExit(1)

        except SystemExit:
            raise
        except Exception as e:
            console.print(f"[red]❌ Restore failed: {e}[/]")
            raise SystemExit(1) from e
        finally:
            if manager:
                await manager.close()

    asyncio.run(run_restore())


@migrations.command("backups")
@click.option("--purge", is_flag=True, help="Delete artifacts past their retention window")
@click.pass_context
def backups(ctx, purge: bool):
    """List catalogued backups."""

    async def run_backups():
        manager = None
        try:
            manager = await _open_manager(_settings(ctx))
            if purge:
                purged = manager.purge_expired_backups()
                console.print(f"[green]✅ Purged {len(purged)} expired backup(s)[/]")

            records = manager.list_backups()
            if not records:
                console.print("[yellow]No backups[/]")
                return

            table = Table(title="Backups")
            table.add_column("ID", style="cyan")
            table.add_column("Version", style="green")
            table.add_column("Created", style="yellow")
            table.add_column("Type", style="magenta")
            table.add_column("Size", style="blue")
            table.add_column("State")
            for record in records:
                table.add_row(
                    record.id,
                    record.version,
                    record.timestamp.isoformat(),
                    record.type.value,
                    f"{record.size:,}",
                    "purged" if record.purged_at else "available",
                )
            console.print(table)

        except Exception as e:
            console.print(f"[red]❌ Error listing backups: {e}[/]")
            raise SystemExit(1) from e
        finally:
            if manager:
                await manager.close()

    asyncio.run(run_backups())


@migrations.command("validate")
@click.argument("rules_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def validate(ctx, rules_file: Path):
    """Run the data validation rules in RULES_FILE.

    Exits with status 1 when an error-severity or critical rule fails.
    """

    async def run_validate():
        from strata.migrations.loader import load_rules

        manager = None
        try:
            rules = load_rules(rules_file)
            manager = await _open_manager(_settings(ctx))
            summary = await manager.run_validation(rules)

            table = Table(title="Validation Results")
            table.add_column("Rule", style="cyan")
            table.add_column("Category", style="green")
            table.add_column("Severity", style="magenta")
            table.add_column("Result")
            for rule_result in summary.results:
                table.add_row(
                    rule_result.rule.name,
                    rule_result.rule.category,
                    rule_result.rule.severity,
                    "[green]passed[/]" if rule_result.success else f"[red]{rule_result.message}[/]",
                )
            console.print(table)
            console.print(
                f"[bold cyan]Passed:[/] {summary.passed}  [bold cyan]Failed:[/] {summary.failed}  "
                f"[bold cyan]Warnings:[/] {summary.warnings}"
            )

            if summary.failed or summary.critical_failures:
                console.print("[red]❌ Validation failed[/]")
                raise SystemExit(1)
            console.print("[green]✅ All validation rules passed[/]")

        except SystemExit:
            raise
        except Exception as e:
            console.print(f"[red]❌ Validation error: {e}[/]")
            raise SystemExit(1) from e
        finally:
            if manager:
                await manager.close()

    asyncio.run(run_validate())


@migrations.command("export")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None, help="Write to a file")
@click.pass_context
def export(ctx, output: Optional[Path]):
    """Export the history ledger and status as JSON."""

    async def run_export():
        manager = None
        try:
            manager = await _open_manager(_settings(ctx))
            document = manager.export()
            if output:
                output.write_text(document, encoding="utf-8")
                console.print(f"[green]✅ Exported history to {output}[/]")
            else:
                click.echo(document)

        except Exception as e:
            console.print(f"[red]❌ Export failed: {e}[/]")
            raise SystemExit(1) from e
        finally:
            if manager:
                await manager.close()

    asyncio.run(run_export())


@migrations.command("create")
@click.argument("description")
@click.option("--version", "version", type=str, default=None, help="Version (default: UTC timestamp)")
@click.pass_context
def create(ctx, description: str, version: Optional[str]):
    """Create a new migration set file.

    Examples:
        strata migrations create "add user preferences"
        strata migrations create "add orders" --version 1.3.0
    """
    from strata.migrations.loader import render_template

    version = version or datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    safe_name = description.lower().replace(" ", "_").replace("-", "_")
    migrations_dir = _settings(ctx).migrations_dir.expanduser()
    filepath = migrations_dir / f"{version}_{safe_name}.yaml"

    try:
        if filepath.exists():
            raise FileExistsError(f"{filepath} already exists")
        migrations_dir.mkdir(parents=True, exist_ok=True)
        filepath.write_text(render_template(version, description), encoding="utf-8")

        console.print("[green]✅ Created migration file:[/]")
        console.print(f"  {filepath}")
        console.print()
        console.print("[cyan]Next steps:[/]")
        console.print("  1. Edit the steps of the migration set")
        console.print(f"  2. Run: strata migrations seal {filepath}")
        console.print("  3. Run: strata migrations upgrade")

    except Exception as e:
        console.print(f"[red]❌ Failed to create migration: {e}[/]")
        raise SystemExit(1) from e


@migrations.command("seal")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
def seal(files: tuple[Path, ...]):
    """Recompute the checksum of edited migration set FILES."""
    from strata.migrations.loader import seal_file

    try:
        for path in files:
            sealed = seal_file(path)
            console.print(f"[green]✅ Sealed {path}[/] ({sealed.version}, {sealed.checksum[:12]})")
    except Exception as e:
        console.print(f"[red]❌ Failed to seal: {e}[/]")
        raise SystemExit(1) from e


if __name__ == "__main__":
    cli()
