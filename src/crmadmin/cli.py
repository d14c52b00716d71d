"""
Command-line interface for crmadmin.
"""

import asyncio
import sys
from functools import wraps
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .auth import Authenticator, Session, UserCredentialVerifier
from .config import CrmAdminConfig
from .database.connection import ConnectionConfig, ConnectionPool
from .exceptions import ConfigurationError, CrmAdminError, ValidationError
from .log import setup_logging
from .models import ColumnDescriptor, CrmUserRecord
from .schema.metadata import MetadataManager
from .schema.mutator import ColumnManager, MutationResult, MutationStatus
from .schema.reconciler import AuditReport, RepairStatus, SchemaReconciler
from .schema.types import LogicalType
from .store import MetadataStore
from .users import UserService, hash_password


console = Console()

T = TypeVar("T")


def handle_errors(func):
    """Decorator to handle errors gracefully in CLI commands."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CrmAdminError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted by user[/yellow]")
            sys.exit(0)
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {e}")
            if "--debug" in sys.argv:
                import traceback
                traceback.print_exc()
            sys.exit(1)
    return wrapper


config_option = click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    envvar="CRMADMIN_CONFIG",
    help="Configuration file path",
)

token_option = click.option(
    "--token",
    envvar="CRMADMIN_TOKEN",
    help="Session token from `crmadmin login`",
)


def _load_config(path: str) -> CrmAdminConfig:
    crm_config = CrmAdminConfig.from_yaml(path)
    ctx = click.get_current_context(silent=True)
    debug = bool(ctx and ctx.obj and ctx.obj.get("debug")) or crm_config.debug
    setup_logging(crm_config.logging, debug=debug)
    return crm_config


def _require_session(crm_config: CrmAdminConfig, token: Optional[str]) -> Session:
    return Authenticator.from_config(crm_config.auth).validate_token(token)


def _run_with_pool(
    crm_config: CrmAdminConfig,
    func: Callable[[ConnectionPool], Awaitable[T]],
) -> T:
    async def run() -> T:
        pool = ConnectionPool(ConnectionConfig.from_settings(crm_config.database))
        async with pool:
            return await func(pool)

    return asyncio.run(run())


def _column_manager(pool: ConnectionPool, crm_config: CrmAdminConfig) -> ColumnManager:
    settings = crm_config.schema_management
    return ColumnManager(pool, settings, store=MetadataStore(pool, settings.metadata_schema))


def _user_service(pool: ConnectionPool, crm_config: CrmAdminConfig) -> UserService:
    return UserService(MetadataStore(pool, crm_config.schema_management.metadata_schema))


@click.group()
@click.version_option(__version__)
@click.option(
    "--debug", is_flag=True, help="Enable debug mode"
)
@click.pass_context
def main(ctx, debug):
    """crmadmin: CRM database administration with managed custom columns."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default="crmadmin.yaml",
    help="Output configuration file path",
)
@handle_errors
def init(output: str):
    """Initialize a new crmadmin configuration file."""
    if Path(output).exists():
        if not click.confirm(f"Configuration file {output} already exists. Overwrite?"):
            return

    CrmAdminConfig().to_yaml(output)
    console.print(f"[green]✓[/green] Configuration file created: {output}")
    console.print("\n[yellow]Next steps:[/yellow]")
    console.print("1. Edit the database section of the configuration file")
    console.print("2. Run: crmadmin hash-password, and set auth.admin_password_hash")
    console.print("3. Set auth.secret_key to a long random value")
    console.print(f"4. Run: crmadmin setup --config {output}")


@main.command()
@config_option
@handle_errors
def validate_config(config: str):
    """Validate configuration file."""
    console.print(f"Validating configuration: {config}")

    try:
        crm_config = CrmAdminConfig.from_yaml(config)
        crm_config.validate_config()

        console.print("[green]✓[/green] Configuration is valid")
        _display_config_summary(crm_config)

    except ConfigurationError as e:
        console.print(f"[red]✗[/red] Configuration error: {e}")
        sys.exit(1)


@main.command()
@config_option
@handle_errors
def setup(config: str):
    """Create the metadata, user and base tables."""
    crm_config = _load_config(config)
    settings = crm_config.schema_management

    async def run_setup(pool: ConnectionPool):
        manager = MetadataManager(
            pool,
            metadata_schema=settings.metadata_schema,
            table_schema=settings.table_schema,
            table=settings.table,
        )
        return await manager.setup_metadata_schema()

    results = _run_with_pool(crm_config, run_setup)

    for table in results["tables_created"]:
        console.print(f"[green]✓[/green] {table}")
    for error in results["errors"]:
        console.print(f"[red]✗[/red] {error}")

    if results["errors"]:
        sys.exit(1)
    console.print("[green]Setup complete[/green]")


@main.command("hash-password")
@click.password_option(help="Password to hash")
@handle_errors
def hash_password_command(password: str):
    """Print a password hash for auth.admin_password_hash."""
    console.print(hash_password(password), soft_wrap=True)


@main.command()
@config_option
@click.option("--email", prompt=True, help="Login email")
@click.option("--password", prompt=True, hide_input=True, help="Login password")
@click.option(
    "--source",
    type=click.Choice(["admin", "users"]),
    default="admin",
    help="Check the configured administrator or the crm_users table",
)
@handle_errors
def login(config: str, email: str, password: str, source: str):
    """Open a session and print its token."""
    crm_config = _load_config(config)

    if source == "admin":
        authenticator = Authenticator.from_config(crm_config.auth)
        session = asyncio.run(authenticator.authenticate(email, password))
    else:
        async def run_login(pool: ConnectionPool) -> Session:
            verifier = UserCredentialVerifier(_user_service(pool, crm_config))
            authenticator = Authenticator.from_config(crm_config.auth, verifier)
            return await authenticator.authenticate(email, password)

        session = _run_with_pool(crm_config, run_login)

    console.print(f"[green]✓[/green] Logged in as {session.subject}")
    console.print(f"Session expires {session.expires_at.isoformat()}")
    console.print(f"\nexport CRMADMIN_TOKEN={session.token}", soft_wrap=True)


# Custom columns


@main.group()
def columns():
    """Manage custom columns of the base table."""


@columns.command("list")
@config_option
@token_option
@handle_errors
def columns_list(config: str, token: Optional[str]):
    """List custom column descriptors, newest first."""
    crm_config = _load_config(config)
    _require_session(crm_config, token)

    async def run_list(pool: ConnectionPool):
        return await _column_manager(pool, crm_config).list_columns()

    descriptors = _run_with_pool(crm_config, run_list)
    _display_descriptors(descriptors, crm_config.schema_management.column_prefix)


@columns.command("add")
@config_option
@token_option
@click.argument("name")
@click.option(
    "--type",
    "-t",
    "column_type",
    default=LogicalType.STRING.value,
    show_default=True,
    help="Column type: " + ", ".join(t.value for t in LogicalType),
)
@click.option(
    "--option",
    "-o",
    "options",
    multiple=True,
    help="Dropdown option (repeat for each option)",
)
@handle_errors
def columns_add(config: str, token: Optional[str], name: str, column_type: str, options: Tuple[str, ...]):
    """Add a custom column."""
    crm_config = _load_config(config)
    _require_session(crm_config, token)

    async def run_add(pool: ConnectionPool) -> MutationResult:
        return await _column_manager(pool, crm_config).add_column(name, column_type, list(options))

    _report_mutation(_run_with_pool(crm_config, run_add))


@columns.command("rename")
@config_option
@token_option
@click.argument("column_id")
@click.argument("new_name")
@handle_errors
def columns_rename(config: str, token: Optional[str], column_id: str, new_name: str):
    """Rename a custom column."""
    crm_config = _load_config(config)
    _require_session(crm_config, token)

    async def run_rename(pool: ConnectionPool) -> MutationResult:
        return await _column_manager(pool, crm_config).rename_column(column_id, new_name)

    _report_mutation(_run_with_pool(crm_config, run_rename))


@columns.command("delete")
@config_option
@token_option
@click.argument("column_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@handle_errors
def columns_delete(config: str, token: Optional[str], column_id: str, yes: bool):
    """Drop a custom column and its data."""
    crm_config = _load_config(config)
    _require_session(crm_config, token)

    if not yes and not click.confirm(
        "This permanently deletes the column and all data stored in it. Continue?"
    ):
        return

    async def run_delete(pool: ConnectionPool) -> MutationResult:
        return await _column_manager(pool, crm_config).delete_column(column_id)

    _report_mutation(_run_with_pool(crm_config, run_delete))


# Live schema


@main.group()
def schema():
    """Inspect the live base table."""


@schema.command("show")
@config_option
@token_option
@handle_errors
def schema_show(config: str, token: Optional[str]):
    """Show the live columns of the base table."""
    crm_config = _load_config(config)
    _require_session(crm_config, token)
    settings = crm_config.schema_management

    async def run_show(pool: ConnectionPool):
        return await _column_manager(pool, crm_config).list_schema()

    live_columns = _run_with_pool(crm_config, run_show)

    table = Table(title=f"Schema of {settings.full_table_name}")
    table.add_column("Column", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Nullable", style="green")
    table.add_column("Default", style="yellow")
    for column in live_columns:
        name = f"[bold]{column.name}[/bold]" if column.is_custom(settings.column_prefix) else column.name
        table.add_row(name, column.data_type, "YES" if column.is_nullable else "NO", column.default or "")
    console.print(table)


@schema.command("audit")
@config_option
@token_option
@click.option("--repair", is_flag=True, help="Delete metadata of columns that no longer exist")
@click.option(
    "--drop-orphans",
    is_flag=True,
    help="With --repair, also drop live custom columns that have no metadata",
)
@handle_errors
def schema_audit(config: str, token: Optional[str], repair: bool, drop_orphans: bool):
    """Compare live custom columns with their metadata."""
    crm_config = _load_config(config)
    _require_session(crm_config, token)
    settings = crm_config.schema_management

    async def run_audit(pool: ConnectionPool):
        reconciler = SchemaReconciler(
            pool, settings, store=MetadataStore(pool, settings.metadata_schema)
        )
        report = await reconciler.audit()
        result = None
        if repair and not report.is_consistent:
            result = await reconciler.repair(report, drop_orphans=drop_orphans)
        return report, result

    report, result = _run_with_pool(crm_config, run_audit)
    _display_audit(report)

    if result is not None and result.status == RepairStatus.SKIPPED:
        console.print("[yellow]No repairs were made[/yellow]")
        sys.exit(1)
    elif result is not None:
        for name in result.removed_descriptors:
            console.print(f"[green]✓[/green] Removed metadata for {name}")
        for change in result.changes_applied:
            if change.executed:
                console.print(f"[green]✓[/green] Dropped orphan column {change.column}")
        for error in result.errors:
            console.print(f"[red]✗[/red] {error}")
        if result.errors:
            sys.exit(1)
    elif not report.is_consistent:
        sys.exit(1)


# CRM users


@main.group()
def users():
    """Manage CRM user accounts."""


@users.command("list")
@config_option
@token_option
@handle_errors
def users_list(config: str, token: Optional[str]):
    """List CRM users."""
    crm_config = _load_config(config)
    _require_session(crm_config, token)

    async def run_list(pool: ConnectionPool):
        return await _user_service(pool, crm_config).list_users()

    _display_users(_run_with_pool(crm_config, run_list))


@users.command("create")
@config_option
@token_option
@click.option("--email", required=True, help="Login email")
@click.password_option(help="Initial password")
@click.option("--name", help="Display name")
@click.option("--phone", help="Phone number")
@handle_errors
def users_create(
    config: str,
    token: Optional[str],
    email: str,
    password: str,
    name: Optional[str],
    phone: Optional[str],
):
    """Create a CRM user."""
    crm_config = _load_config(config)
    _require_session(crm_config, token)
    data = {"email": email, "password": password, "name": name, "phone_number": phone}

    async def run_create(pool: ConnectionPool) -> CrmUserRecord:
        return await _user_service(pool, crm_config).create_user(data)

    user = _run_with_pool(crm_config, run_create)
    console.print(f"[green]✓[/green] Created user {user.email} ({user.id})")


@users.command("update")
@config_option
@token_option
@click.argument("user_id")
@click.option("--email", help="New login email")
@click.option("--password", help="New password")
@click.option("--name", help="New display name")
@click.option("--phone", help="New phone number")
@handle_errors
def users_update(
    config: str,
    token: Optional[str],
    user_id: str,
    email: Optional[str],
    password: Optional[str],
    name: Optional[str],
    phone: Optional[str],
):
    """Update fields of a CRM user."""
    crm_config = _load_config(config)
    _require_session(crm_config, token)

    fields = {
        key: value
        for key, value in (
            ("email", email),
            ("password", password),
            ("name", name),
            ("phone_number", phone),
        )
        if value is not None
    }
    if not fields:
        raise ValidationError("Nothing to update; pass at least one of --email, --password, --name, --phone")

    async def run_update(pool: ConnectionPool) -> CrmUserRecord:
        return await _user_service(pool, crm_config).update_user(user_id, fields)

    user = _run_with_pool(crm_config, run_update)
    console.print(f"[green]✓[/green] Updated user {user.email}")


@users.command("delete")
@config_option
@token_option
@click.argument("user_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@handle_errors
def users_delete(config: str, token: Optional[str], user_id: str, yes: bool):
    """Delete a CRM user."""
    crm_config = _load_config(config)
    _require_session(crm_config, token)

    if not yes and not click.confirm(f"Delete user {user_id}?"):
        return

    async def run_delete(pool: ConnectionPool) -> None:
        await _user_service(pool, crm_config).delete_user(user_id)

    _run_with_pool(crm_config, run_delete)
    console.print(f"[green]✓[/green] Deleted user {user_id}")


# Output helpers


def _report_mutation(result: MutationResult) -> None:
    if result.status == MutationStatus.SKIPPED:
        console.print("[yellow]Dry run mode - no changes were made[/yellow]")
        for change in result.changes:
            console.print(f"  {change.sql.strip()}")
        return

    if result.succeeded:
        template = {
            "add_column": "Added column {}",
            "rename_column": "Renamed column to {}",
            "delete_column": "Deleted column {}",
        }[result.operation]
        console.print("[green]✓[/green] " + template.format(result.column_name))
        return

    if result.compensated:
        console.print("[yellow]The table change was undone; no changes were kept[/yellow]")
    if result.inconsistency is not None:
        console.print(
            f"[bold red]Table and metadata are out of sync "
            f"({result.inconsistency.kind.value}: {result.inconsistency.column_name}).[/bold red]"
        )
        console.print("Run: crmadmin schema audit --repair")

    result.raise_for_status()


def _display_config_summary(config: CrmAdminConfig) -> None:
    """Display configuration summary."""
    console.print("\n[bold]Configuration Summary[/bold]")

    table = Table()
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")

    settings = config.schema_management
    table.add_row("Database", f"{config.database.host}:{config.database.port}/{config.database.database}")
    table.add_row("Base table", settings.full_table_name)
    table.add_row("Metadata schema", settings.metadata_schema)
    table.add_row("Column prefix", settings.column_prefix)
    table.add_row("Mode", settings.mode)
    table.add_row("Transactional", "yes" if settings.transactional else "no")
    table.add_row("Administrator", config.auth.admin_email)
    console.print(table)


def _display_descriptors(descriptors: List[ColumnDescriptor], prefix: str) -> None:
    table = Table(title="Custom Columns")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Column", style="magenta")
    table.add_column("Type", style="green")
    table.add_column("Options", style="yellow")

    for descriptor in descriptors:
        table.add_row(
            descriptor.id,
            descriptor.display_name(prefix),
            descriptor.column_name,
            descriptor.column_type.label,
            ", ".join(descriptor.dropdown_options or []),
        )
    console.print(table)


def _display_audit(report: AuditReport) -> None:
    if report.is_consistent:
        console.print(
            f"[green]✓[/green] {report.table}: {report.described_columns} custom columns, "
            "all in sync with metadata"
        )
        return

    table = Table(title=f"Audit of {report.table}")
    table.add_column("Problem", style="red")
    table.add_column("Column", style="cyan")
    table.add_column("Detail", style="yellow")
    for column in report.orphan_columns:
        table.add_row("orphan column", column.name, f"{column.data_type}, no metadata")
    for descriptor in report.dangling_descriptors:
        table.add_row("dangling metadata", descriptor.column_name, "column does not exist")
    for mismatch in report.type_mismatches:
        table.add_row(
            "type mismatch",
            mismatch.column_name,
            f"expected {mismatch.expected_data_type}, found {mismatch.actual_data_type}",
        )
    console.print(table)


def _display_users(records: List[CrmUserRecord]) -> None:
    table = Table(title="CRM Users")
    table.add_column("ID", style="dim")
    table.add_column("Email", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Phone", style="green")
    table.add_column("Created", style="yellow")

    for user in records:
        table.add_row(
            user.id,
            user.email,
            user.name or "",
            user.phone_number or "",
            user.created_at.strftime("%Y-%m-%d %H:%M") if user.created_at else "",
        )
    console.print(table)


if __name__ == "__main__":
    main()
