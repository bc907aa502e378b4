"""CLI module for cross-dialect schema discovery, comparison and migration.

Provides commands for listing profiles, discovering a schema, comparing two
profiles, planning a migration and running it.

Usage:
    db-bridge profiles
    db-bridge discover local
    db-bridge compare local prod
    db-bridge plan local prod --sql
    db-bridge migrate local prod --dry-run
    db-bridge migrate local prod --batch-size 1000 --parallel --confirm

Commands:
    profiles  - List available profiles
    discover  - Show the schema discovered for a profile
    compare   - Compare the schemas of two profiles
    plan      - Show the migration plan from one profile to another
    migrate   - Migrate schema and data from one profile to another
"""

import argparse
import asyncio
import sys

from rich.console import Console
from rich.table import Table

from db_bridge.adapters.async_engine import AsyncEngineHandle
from db_bridge.config.loader import load_config
from db_bridge.config.models import BridgeConfig
from db_bridge.errors import BridgeError
from db_bridge.factory import ProfileNotFoundError, create_handle, get_profile
from db_bridge.migration.models import CopyProgress, MigrationOptions, MigrationPlan
from db_bridge.migration.service import compare, discover, migrate, plan
from db_bridge.schema.models import DifferenceKind

console = Console()


# ============================================================================
# Shared helpers
# ============================================================================


def _load(args: argparse.Namespace) -> BridgeConfig | None:
    """Load db.toml, printing the error and returning None on failure."""
    try:
        return load_config(getattr(args, "config", None))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return None


def _open(config: BridgeConfig, *names: str) -> list[AsyncEngineHandle] | None:
    """Create one handle per profile name, or print the error and return None."""
    handles: list[AsyncEngineHandle] = []
    try:
        for name in names:
            handles.append(create_handle(get_profile(config, name)))
    except (ProfileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return None
    return handles


async def _close(handles: list[AsyncEngineHandle]) -> None:
    for handle in handles:
        await handle.close()


def _migration_options(config: BridgeConfig, args: argparse.Namespace) -> MigrationOptions:
    """Overlay command-line flags on the ``[migration]`` section of db.toml."""
    overrides: dict = {}
    for flag in (
        "dry_run",
        "schema_only",
        "drop_tables",
        "parallel",
        "continue_on_error",
        "copy_existing",
    ):
        if getattr(args, flag, False):
            key = "copy_existing_tables" if flag == "copy_existing" else flag
            overrides[key] = True
    if getattr(args, "batch_size", None):
        overrides["batch_size"] = args.batch_size
    if getattr(args, "workers", None):
        overrides["workers"] = args.workers
    if getattr(args, "include", None):
        overrides["include_tables"] = args.include
    if getattr(args, "exclude", None):
        overrides["exclude_tables"] = args.exclude
    return config.migration.model_copy(update=overrides)


def _print_plan(migration_plan: MigrationPlan) -> None:
    """Print a migration plan as a table plus its warnings."""
    plan_table = Table(title="Migration Plan", show_header=True, header_style="bold")
    plan_table.add_column("Table")
    plan_table.add_column("Action")
    plan_table.add_column("DDL", justify="right")
    plan_table.add_column("Copy", justify="center")

    for name in migration_plan.dropped_tables:
        plan_table.add_row(f"[red]{name}[/red]", "[red]drop[/red]", "1", "-")
    for migration in migration_plan.migrations:
        plan_table.add_row(
            migration.table,
            migration.action,
            str(len(migration.ddl)) if migration.ddl else "-",
            "[green]yes[/green]" if migration.copy else "-",
        )

    console.print(plan_table)
    console.print(
        f"  {migration_plan.source_dialect.value} -> {migration_plan.target_dialect.value}, "
        f"deferred constraints: {len(migration_plan.enable_constraints)}, "
        f"post statements: {len(migration_plan.post_statements)}, "
        f"impact: [bold]{migration_plan.estimated_impact}[/bold]"
    )

    for warning in migration_plan.warnings:
        console.print(f"  [yellow]! {warning}[/yellow]")
    for note in migration_plan.optimizations:
        console.print(f"  [dim]- {note}[/dim]")


def _print_progress(progress: CopyProgress) -> None:
    eta = f", eta {progress.eta_seconds:.1f}s" if progress.eta_seconds is not None else ""
    console.print(
        f"  [dim]{progress.table}: {progress.current}/{progress.total} "
        f"({progress.percentage:.0f}%{eta})[/dim]"
    )


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_discover(args: argparse.Namespace) -> int:
    """Async implementation for discover command.

    Args:
        args: Parsed arguments with profile and views.

    Returns:
        0 on success, 1 on failure.
    """
    config = _load(args)
    if config is None:
        return 1
    handles = _open(config, args.profile)
    if handles is None:
        return 1

    discovery = config.discovery.model_copy(update={"include_views": True}) if args.views else config.discovery
    console.print(f"Discovering schema for profile: [bold cyan]{args.profile}[/bold cyan]")
    try:
        schema = await discover(handles[0], discovery)
    except BridgeError as e:
        console.print(f"\n[red]Error: {e}[/red]")
        return 1
    finally:
        await _close(handles)

    table = Table(
        title=f"{args.profile} ({schema.dialect.value})", show_header=True, header_style="bold"
    )
    table.add_column("Table")
    table.add_column("Columns", justify="right")
    table.add_column("Primary Key")
    table.add_column("Indexes", justify="right")
    table.add_column("Foreign Keys", justify="right")

    for t in schema.tables:
        name = f"[dim]{t.name} (view)[/dim]" if t.is_view else t.name
        table.add_row(
            name,
            str(len(t.columns)),
            ", ".join(t.primary_key) or "-",
            str(len(t.indexes)),
            str(len(t.foreign_keys)),
        )

    console.print(table)
    if schema.relationships:
        console.print(f"  Relationships: {len(schema.relationships)}")
    for warning in schema.warnings:
        console.print(f"  [yellow]! {warning}[/yellow]")
    return 0


async def _async_compare(args: argparse.Namespace) -> int:
    """Async implementation for compare command.

    Returns:
        0 if the schemas are compatible, 1 otherwise.
    """
    config = _load(args)
    if config is None:
        return 1
    handles = _open(config, args.source, args.target)
    if handles is None:
        return 1

    console.print("Comparing profiles...", style="dim")
    console.print(f"  Source: [bold]{args.source}[/bold]")
    console.print(f"  Target: [bold cyan]{args.target}[/bold cyan]")

    try:
        result = await compare(handles[0], handles[1], config.discovery)
    finally:
        await _close(handles)

    console.print()
    if result.error:
        console.print(f"[red]Error: {result.error}[/red]")
        return 1

    if result.compatible:
        console.print("[bold green]v[/bold green] " + result.format_report())
        return 0

    console.print("[bold red]x[/bold red] " + result.format_report())
    missing = result.of_kind(DifferenceKind.TABLE_ADDED)
    if missing:
        console.print(
            f"\n[dim]Run[/dim] [cyan]db-bridge migrate {args.source} {args.target}[/cyan] "
            f"[dim]to create: {', '.join(d.table for d in missing)}[/dim]"
        )
    return 1


async def _async_plan(args: argparse.Namespace) -> int:
    """Async implementation for plan command.

    Returns:
        0 if a plan was produced, 1 on failure.
    """
    config = _load(args)
    if config is None:
        return 1
    handles = _open(config, args.source, args.target)
    if handles is None:
        return 1

    options = _migration_options(config, args)
    try:
        migration_plan = await plan(handles[0], handles[1], options, config.discovery)
    except BridgeError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    finally:
        await _close(handles)

    if args.sql:
        console.print(migration_plan.to_sql(), markup=False, highlight=False)
        return 0

    if not migration_plan.has_changes:
        console.print("[bold green]v[/bold green] Nothing to migrate")
        return 0

    _print_plan(migration_plan)
    return 0


async def _async_migrate(args: argparse.Namespace) -> int:
    """Async implementation for migrate command.

    Without ``--dry-run`` or ``--confirm`` only the plan is shown.

    Returns:
        0 on success, 1 on failure.
    """
    config = _load(args)
    if config is None:
        return 1
    if args.source == args.target:
        console.print(
            f"[red]Error: Source and target are the same profile: {args.source}[/red]"
        )
        return 1
    handles = _open(config, args.source, args.target)
    if handles is None:
        return 1

    options = _migration_options(config, args)
    source, target = handles
    try:
        if not options.dry_run and not args.confirm:
            try:
                migration_plan = await plan(source, target, options, config.discovery)
            except BridgeError as e:
                console.print(f"[red]Error: {e}[/red]")
                return 1
            _print_plan(migration_plan)
            console.print()
            console.print(
                "[dim]To actually migrate, add[/dim] [cyan]--confirm[/cyan] [dim]flag.[/dim]"
            )
            return 0

        console.print(f"Migrating [bold]{args.source}[/bold] -> [bold cyan]{args.target}[/bold cyan]...", style="dim")
        result = await migrate(
            source,
            target,
            options,
            config.discovery,
            on_progress=None if options.dry_run else _print_progress,
        )
    except BridgeError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    finally:
        await _close(handles)

    if result.dry_run:
        for statement in result.statements:
            console.print(f"{statement};", markup=False, highlight=False)
        console.print()
        console.print("[bold yellow]DRY RUN[/bold yellow] - No changes made.")
        return 0 if result.success else 1

    for warning in result.warnings:
        console.print(f"  [yellow]! {warning}[/yellow]")

    if result.success:
        summary = result.summary
        console.print()
        console.print("[bold green]v[/bold green] Migration complete")
        console.print(f"  Tables processed: {result.tables_processed}")
        console.print(f"  Rows migrated: {result.rows_migrated}")
        console.print(f"  Schema changes: {summary.schema_changes}")
        if summary.tables_created:
            console.print(f"  Created: [green]{', '.join(summary.tables_created)}[/green]")
        if summary.tables_dropped:
            console.print(f"  Dropped: [red]{', '.join(summary.tables_dropped)}[/red]")
        console.print(f"  [dim]{result.duration:.2f}s[/dim]")
        return 0

    console.print()
    if result.cancelled:
        console.print("[bold yellow]Migration cancelled[/bold yellow]")
    else:
        console.print("[bold red]x[/bold red] Migration failed")
    for error in result.errors:
        where = f"{error.table}: " if error.table else ""
        console.print(f"  [red]- {where}{error.message}[/red]")
    return 1


# ============================================================================
# Command handlers
# ============================================================================


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from db.toml.

    Args:
        args: Parsed CLI arguments.

    Returns:
        0 on success, 1 if db.toml not found.
    """
    config = _load(args)
    if config is None:
        return 1

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("Profile")
    table.add_column("Dialect")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        scheme = profile.url.split(":", 1)[0].split("+", 1)[0]
        table.add_row(f"[cyan]{name}[/cyan]", scheme, profile.description or "")

    console.print(table)
    return 0


def cmd_discover(args: argparse.Namespace) -> int:
    """Show the schema discovered for a profile.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_discover(args))


def cmd_compare(args: argparse.Namespace) -> int:
    """Compare the schemas of two profiles.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_compare(args))


def cmd_plan(args: argparse.Namespace) -> int:
    """Show the migration plan between two profiles.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_plan(args))


def cmd_migrate(args: argparse.Namespace) -> int:
    """Migrate schema and data between two profiles.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_migrate(args))


# ============================================================================
# Main entry point
# ============================================================================


def _add_plan_options(parser: argparse.ArgumentParser) -> None:
    """Flags shared by plan and migrate."""
    parser.add_argument("source", help="Source profile")
    parser.add_argument("target", help="Target profile")
    parser.add_argument("--schema-only", action="store_true", help="Migrate DDL only, no rows")
    parser.add_argument(
        "--drop-tables",
        action="store_true",
        help="Drop target tables that do not exist in the source (destructive)",
    )
    parser.add_argument(
        "--copy-existing",
        action="store_true",
        help="Also copy rows into tables that already exist in the target",
    )
    parser.add_argument("--batch-size", type=int, help="Rows per batch (default from db.toml or 500)")
    parser.add_argument(
        "--include",
        nargs="+",
        metavar="PATTERN",
        help="Only migrate tables matching these glob patterns",
    )
    parser.add_argument(
        "--exclude",
        nargs="+",
        metavar="PATTERN",
        help="Leave out tables matching these glob patterns",
    )
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Skip unsupported constructs and keep going after a failed table",
    )


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = argparse.ArgumentParser(
        prog="db-bridge",
        description="Cross-dialect schema discovery, comparison and migration",
    )

    # Global option: --config
    parser.add_argument(
        "--config",
        "-c",
        default=None,
        help="Path to db.toml (default: ./db.toml)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # profiles command
    p_profiles = subparsers.add_parser(
        "profiles",
        help="List available profiles",
    )
    p_profiles.set_defaults(func=cmd_profiles)

    # discover command
    p_discover = subparsers.add_parser(
        "discover",
        help="Show the schema discovered for a profile",
    )
    p_discover.add_argument("profile", help="Profile to discover")
    p_discover.add_argument("--views", action="store_true", help="Include views")
    p_discover.set_defaults(func=cmd_discover)

    # compare command
    p_compare = subparsers.add_parser(
        "compare",
        help="Compare the schemas of two profiles",
    )
    p_compare.add_argument("source", help="Source profile")
    p_compare.add_argument("target", help="Target profile")
    p_compare.set_defaults(func=cmd_compare)

    # plan command
    p_plan = subparsers.add_parser(
        "plan",
        help="Show the migration plan from one profile to another",
    )
    _add_plan_options(p_plan)
    p_plan.add_argument("--sql", action="store_true", help="Print the plan as a SQL script")
    p_plan.set_defaults(func=cmd_plan)

    # migrate command
    p_migrate = subparsers.add_parser(
        "migrate",
        help="Migrate schema and data from one profile to another",
    )
    _add_plan_options(p_migrate)
    p_migrate.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the SQL that would run without making changes",
    )
    p_migrate.add_argument(
        "--parallel",
        action="store_true",
        help="Copy independent table groups concurrently",
    )
    p_migrate.add_argument("--workers", type=int, help="Concurrent table groups with --parallel")
    p_migrate.add_argument(
        "--confirm",
        action="store_true",
        help="Actually perform the migration (required for non-dry-run)",
    )
    p_migrate.set_defaults(func=cmd_migrate)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
