"""CSV governance CLI commands.

Commands:
    csvgov provision [CSV]   set up the application, entitlements and users
    csvgov sync [CSV]        reconcile users and grants (optionally on a loop)
    csvgov plan [CSV]        show the change set without applying it
    csvgov mine [CSV]        discover role candidates
    csvgov catalog [CSV]     show column classification and entitlement values
    csvgov status            show what the tenant currently holds
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Any, Coroutine, Optional

import typer

from csvgov.connector.config import DEFAULT_CONFIG_FILE, ConnectorConfig
from csvgov.connector.engine.catalog import build_catalog, catalog_size, iter_catalog
from csvgov.connector.engine.mining import run_role_mining
from csvgov.connector.engine.provisioning import (
    ProvisioningReport,
    ensure_application,
    ensure_governance_resource,
    sync_custom_attributes,
    sync_entitlement_catalog,
    sync_profile_mappings,
)
from csvgov.connector.engine.reconcile import (
    SyncPass,
    compute_change_set,
    fetch_snapshot,
    load_entitlement_index,
    run_sync_loop,
    run_sync_pass,
)
from csvgov.connector.engine.schema import classify_columns
from csvgov.connector.logs import configure_logging
from csvgov.connector.models import Table
from csvgov.connector.okta.client import OktaClient
from csvgov.connector.okta.settings import OktaSettings
from csvgov.connector.port import AuthError, GovernanceError, NotFoundError
from csvgov.connector.sources import DataSourceError, list_candidate_files, read_table

logger = logging.getLogger(__name__)


# Shared options
CsvArgument = Annotated[
    Optional[Path],
    typer.Argument(help="CSV file with the desired state", dir_okay=False),
]
ConfigOption = Annotated[
    Path,
    typer.Option("--config", "-c", help="Run configuration YAML file"),
]
OktaDomainOption = Annotated[
    Optional[str],
    typer.Option("--okta-domain", "-d", help="Okta domain, e.g. acme.okta.com"),
]
ClientIdOption = Annotated[
    Optional[str],
    typer.Option("--client-id", help="OAuth service app client ID"),
]
ClientSecretOption = Annotated[
    Optional[str],
    typer.Option("--client-secret", help="OAuth service app client secret"),
]
PrivateKeyOption = Annotated[
    Optional[Path],
    typer.Option("--private-key-path", help="PEM private key for private_key_jwt"),
]
ApiTokenOption = Annotated[
    Optional[str],
    typer.Option("--api-token", help="Okta SSWS API token"),
]
DryRunOption = Annotated[
    bool,
    typer.Option("--dry-run", "-n", help="Show what would be done without making changes"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable verbose output"),
]
JsonLogsOption = Annotated[
    bool,
    typer.Option("--json-logs", help="Emit engine logs as JSON"),
]


def _build_settings(
    okta_domain: str | None,
    client_id: str | None,
    client_secret: str | None,
    private_key_path: Path | None,
    api_token: str | None,
) -> OktaSettings:
    """Build settings from environment and CLI overrides."""
    try:
        base = OktaSettings()
        return base.with_overrides(
            okta_domain=okta_domain,
            client_id=client_id,
            client_secret=client_secret,
            private_key_path=private_key_path,
            api_token=api_token,
        )
    except ValueError as e:
        typer.secho(f"Invalid settings: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _setup_logging(settings: OktaSettings | None, verbose: bool, json_logs: bool) -> None:
    level = "DEBUG" if verbose else (settings.log_level if settings else "INFO")
    configure_logging(level, json_format=json_logs or bool(settings and settings.json_logs))


def _require_connection(settings: OktaSettings) -> None:
    if not settings.okta_domain:
        typer.secho(
            "Okta domain is required (--okta-domain or CSVGOV_OKTA_DOMAIN)",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(1)
    if not (settings.has_client_credentials or settings.has_api_token):
        typer.secho(
            "No credentials configured. Provide --client-id with --client-secret or "
            "--private-key-path, or --api-token",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(1)


def _load_config(config_path: Path) -> ConnectorConfig:
    try:
        return ConnectorConfig.load(config_path)
    except Exception as e:
        typer.secho(f"Error loading config: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def select_csv_file(
    explicit: Path | None,
    config: ConnectorConfig,
    config_path: Path = DEFAULT_CONFIG_FILE,
    directory: Path = Path("."),
) -> Path:
    """Pick the CSV to work from.

    An explicit argument wins, then the remembered file, then the only CSV in
    ``directory``. Otherwise the user picks from a numbered list and the
    choice is remembered in the run configuration.
    """
    if explicit is not None:
        return explicit

    if config.csv_file is not None and Path(config.csv_file).is_file():
        typer.echo(f"Using remembered CSV file: {config.csv_file}")
        return Path(config.csv_file)

    candidates = list_candidate_files(directory)
    if not candidates:
        typer.secho(f"No CSV files found in {directory.resolve()}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    if len(candidates) == 1:
        typer.echo(f"Using CSV file: {candidates[0]}")
        return candidates[0]

    typer.echo("Available CSV files:")
    for idx, candidate in enumerate(candidates, start=1):
        typer.echo(f"  {idx}. {candidate.name}")
    choice = typer.prompt("Select a CSV file", type=int, default=1)
    if choice < 1 or choice > len(candidates):
        typer.secho(f"Invalid selection: {choice}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    selected = candidates[choice - 1]
    try:
        config.remember_csv_file(selected, config_path)
    except (OSError, ValueError) as e:
        logger.warning("Could not remember CSV selection in %s: %s", config_path, e)
    return selected


def _load_table(path: Path) -> Table:
    try:
        table = read_table(path)
    except DataSourceError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    if not table.rows:
        typer.secho(f"Warning: {path} has no data rows", fg=typer.colors.YELLOW)
    return table


def _run(coro: Coroutine[Any, Any, Any], verbose: bool) -> Any:
    """Run a coroutine and turn failures into CLI errors."""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        typer.secho("\nStopped", fg=typer.colors.YELLOW)
        raise typer.Exit(0)
    except AuthError as e:
        typer.secho(f"Authentication failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except GovernanceError as e:
        typer.secho(f"Okta error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except Exception as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        if verbose:
            import traceback

            traceback.print_exc()
        raise typer.Exit(1)


async def _require_application(client: OktaClient, name: str) -> dict[str, Any]:
    app = await client.find_application_by_name(name)
    if not app:
        raise NotFoundError(f"Application '{name}' not found. Run 'csvgov provision' first")
    return app


async def _lookup_resource(client: OktaClient, application_id: str) -> str | None:
    try:
        return await client.get_governance_resource(application_id)
    except GovernanceError as e:
        logger.warning("Governance resource lookup failed: %s", e)
        return None


def _print_pass(sync_pass: SyncPass) -> None:
    typer.echo("\n" + sync_pass.change_set.summary())
    typer.echo("\n" + sync_pass.summary())
    for warning in sync_pass.result.warnings:
        typer.secho(f"Warning: {warning}", fg=typer.colors.YELLOW)


def _print_pass_error(error: Exception) -> None:
    typer.secho(f"Sync pass failed: {error}", fg=typer.colors.RED, err=True)


async def _watch(
    client: OktaClient,
    application_id: str,
    csv_path: Path,
    resource_id: str | None,
    config: ConnectorConfig,
    interval: float,
) -> int:
    """Re-read the CSV and reconcile every ``interval`` minutes."""
    options = config.reconcile_options()

    async def one_pass() -> SyncPass:
        table = read_table(csv_path)
        return await run_sync_pass(
            client,
            application_id,
            table.rows,
            header=table.header,
            resource_id=resource_id,
            options=options,
        )

    typer.echo(f"\nWatching {csv_path} every {interval:g} minutes (Ctrl+C to stop)")
    return await run_sync_loop(
        one_pass,
        interval,
        on_pass=_print_pass,
        on_error=_print_pass_error,
        wait_first=True,
    )


# -----------------------------------------------------------------------------
# provision
# -----------------------------------------------------------------------------


def provision(
    csv_file: CsvArgument = None,
    config_path: ConfigOption = DEFAULT_CONFIG_FILE,
    okta_domain: OktaDomainOption = None,
    client_id: ClientIdOption = None,
    client_secret: ClientSecretOption = None,
    private_key_path: PrivateKeyOption = None,
    api_token: ApiTokenOption = None,
    skip_mining: Annotated[
        bool,
        typer.Option("--skip-mining", help="Do not run role mining"),
    ] = False,
    watch: Annotated[
        bool,
        typer.Option("--watch", "-w", help="Keep syncing every sync_interval minutes"),
    ] = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = False,
    json_logs: JsonLogsOption = False,
) -> None:
    """Provision an application from a CSV file and sync its users.

    Creates the application when missing, mirrors CSV columns into custom
    attributes and profile mappings, creates one entitlement per ent_ column,
    reconciles users and grants, and mines role bundles.

    Example:
        csvgov provision employees.csv --okta-domain acme.okta.com --api-token ...
    """
    settings = _build_settings(okta_domain, client_id, client_secret, private_key_path, api_token)
    _setup_logging(settings, verbose, json_logs)
    _require_connection(settings)

    config = _load_config(config_path)
    csv_path = select_csv_file(csv_file, config, config_path)
    table = _load_table(csv_path)
    app_name = config.resolve_application_name(csv_path)

    typer.echo(f"Provisioning to Okta: {settings.base_url} application={app_name}")
    typer.echo(f"CSV: {len(table.rows)} rows, {len(table.header)} columns")

    ok = _run(
        _async_provision(
            settings=settings,
            config=config,
            table=table,
            csv_path=csv_path,
            app_name=app_name,
            mine=config.role_mining.enabled and not skip_mining,
            watch=watch,
            dry_run=dry_run,
        ),
        verbose,
    )
    if not ok:
        raise typer.Exit(1)


async def _async_provision(
    settings: OktaSettings,
    config: ConnectorConfig,
    table: Table,
    csv_path: Path,
    app_name: str,
    mine: bool,
    watch: bool,
    dry_run: bool,
) -> bool:
    """Run setup, a first sync pass and role mining."""
    prefix = config.entitlement_prefix
    options = config.reconcile_options(dry_run=dry_run)
    columns = classify_columns(table.header, prefix)
    catalog = build_catalog(table.rows, prefix)

    async with OktaClient(settings) as client:
        report = ProvisioningReport()

        app, created = await ensure_application(client, app_name, dry_run=dry_run)
        if app is None:
            typer.secho(
                f"\n[DRY RUN] Would create application '{app_name}'; "
                "remaining steps need the application to exist",
                fg=typer.colors.YELLOW,
            )
            return True
        application_id = app["id"]
        report.application_id = application_id
        report.application_created = created

        resource_id = await ensure_governance_resource(
            client, application_id, app_name, report, dry_run=dry_run
        )

        typer.echo("Syncing custom attributes and profile mappings...")
        await sync_custom_attributes(client, application_id, table.header, report, dry_run=dry_run)
        await sync_profile_mappings(client, application_id, columns, report, dry_run=dry_run)

        if catalog:
            typer.echo(
                f"Syncing {len(catalog)} entitlements ({catalog_size(catalog)} values)..."
            )
        index = await sync_entitlement_catalog(
            client,
            resource_id,
            application_id,
            catalog,
            prefix,
            report,
            retry=options.retry,
            dry_run=dry_run,
        )
        typer.echo("\n" + report.summary())

        typer.echo("\nReconciling users...")
        sync_pass = await run_sync_pass(
            client,
            application_id,
            table.rows,
            header=table.header,
            index=index,
            resource_id=resource_id,
            options=options,
        )
        _print_pass(sync_pass)

        ok = report.success and sync_pass.result.success

        if mine:
            typer.echo("\nMining roles...")
            mining = await run_role_mining(
                table.rows,
                client,
                application_id,
                index,
                min_user_threshold=config.role_mining.min_user_threshold,
                create_bundles=config.role_mining.create_bundles,
                prefix=prefix,
                identity_columns=config.identity_columns,
                dry_run=dry_run,
                retry=options.retry,
            )
            typer.echo("\n" + mining.summary())
            ok = ok and not mining.errors

        if dry_run:
            typer.secho("\n[DRY RUN] No changes applied", fg=typer.colors.YELLOW)
            return ok

        if watch:
            if config.sync_interval <= 0:
                typer.secho(
                    "Warning: sync_interval is 0 in the run configuration, not watching",
                    fg=typer.colors.YELLOW,
                )
            else:
                await _watch(client, application_id, csv_path, resource_id, config, config.sync_interval)

        return ok


# -----------------------------------------------------------------------------
# sync
# -----------------------------------------------------------------------------


def sync(
    csv_file: CsvArgument = None,
    config_path: ConfigOption = DEFAULT_CONFIG_FILE,
    okta_domain: OktaDomainOption = None,
    client_id: ClientIdOption = None,
    client_secret: ClientSecretOption = None,
    private_key_path: PrivateKeyOption = None,
    api_token: ApiTokenOption = None,
    watch: Annotated[
        bool,
        typer.Option("--watch", "-w", help="Repeat the sync every interval"),
    ] = False,
    interval: Annotated[
        Optional[float],
        typer.Option("--interval", "-i", help="Minutes between passes (overrides sync_interval)"),
    ] = None,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = False,
    json_logs: JsonLogsOption = False,
) -> None:
    """Reconcile users and grants of an existing application with the CSV.

    This command is idempotent - once converged, another pass changes nothing.

    Example:
        csvgov sync employees.csv --watch --interval 15
    """
    settings = _build_settings(okta_domain, client_id, client_secret, private_key_path, api_token)
    _setup_logging(settings, verbose, json_logs)
    _require_connection(settings)

    config = _load_config(config_path)
    csv_path = select_csv_file(csv_file, config, config_path)
    table = _load_table(csv_path)
    app_name = config.resolve_application_name(csv_path)

    every = interval if interval is not None else config.sync_interval
    if watch and every <= 0:
        typer.secho(
            "--watch needs a positive --interval or sync_interval",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(1)

    typer.echo(f"Syncing to Okta: {settings.base_url} application={app_name}")
    ok = _run(
        _async_sync(
            settings=settings,
            config=config,
            table=table,
            csv_path=csv_path,
            app_name=app_name,
            watch_interval=every if watch and not dry_run else None,
            dry_run=dry_run,
        ),
        verbose,
    )
    if not ok:
        raise typer.Exit(1)


async def _async_sync(
    settings: OktaSettings,
    config: ConnectorConfig,
    table: Table,
    csv_path: Path,
    app_name: str,
    watch_interval: float | None,
    dry_run: bool,
) -> bool:
    async with OktaClient(settings) as client:
        app = await _require_application(client, app_name)
        resource_id = await _lookup_resource(client, app["id"])

        sync_pass = await run_sync_pass(
            client,
            app["id"],
            table.rows,
            header=table.header,
            resource_id=resource_id,
            options=config.reconcile_options(dry_run=dry_run),
        )
        _print_pass(sync_pass)

        if dry_run:
            typer.secho("\n[DRY RUN] No changes applied", fg=typer.colors.YELLOW)
        elif watch_interval:
            await _watch(client, app["id"], csv_path, resource_id, config, watch_interval)

        return sync_pass.result.success


# -----------------------------------------------------------------------------
# plan
# -----------------------------------------------------------------------------


def plan(
    csv_file: CsvArgument = None,
    config_path: ConfigOption = DEFAULT_CONFIG_FILE,
    okta_domain: OktaDomainOption = None,
    client_id: ClientIdOption = None,
    client_secret: ClientSecretOption = None,
    private_key_path: PrivateKeyOption = None,
    api_token: ApiTokenOption = None,
    verbose: VerboseOption = False,
    json_logs: JsonLogsOption = False,
) -> None:
    """Show the add/update/remove change set without applying it."""
    settings = _build_settings(okta_domain, client_id, client_secret, private_key_path, api_token)
    _setup_logging(settings, verbose, json_logs)
    _require_connection(settings)

    config = _load_config(config_path)
    csv_path = select_csv_file(csv_file, config, config_path)
    table = _load_table(csv_path)
    app_name = config.resolve_application_name(csv_path)

    _run(_async_plan(settings, config, table, app_name), verbose)


async def _async_plan(
    settings: OktaSettings,
    config: ConnectorConfig,
    table: Table,
    app_name: str,
) -> None:
    async with OktaClient(settings) as client:
        app = await _require_application(client, app_name)

        typer.echo("Fetching current state...")
        snapshot = await fetch_snapshot(client, app["id"], config.retry_policy())
        typer.echo(f"Found {len(snapshot)} assigned users")

        change_set = compute_change_set(table.rows, snapshot, config.identity_columns)
        typer.echo("\n" + change_set.summary())


# -----------------------------------------------------------------------------
# mine
# -----------------------------------------------------------------------------


def mine(
    csv_file: CsvArgument = None,
    config_path: ConfigOption = DEFAULT_CONFIG_FILE,
    min_users: Annotated[
        Optional[int],
        typer.Option("--min-users", "-m", min=1, help="Minimum members per role"),
    ] = None,
    create_bundles: Annotated[
        bool,
        typer.Option("--create-bundles", help="Create bundles in Okta (needs credentials)"),
    ] = False,
    top: Annotated[
        int,
        typer.Option("--top", help="Number of candidates to list"),
    ] = 10,
    okta_domain: OktaDomainOption = None,
    client_id: ClientIdOption = None,
    client_secret: ClientSecretOption = None,
    private_key_path: PrivateKeyOption = None,
    api_token: ApiTokenOption = None,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = False,
    json_logs: JsonLogsOption = False,
) -> None:
    """Discover role candidates from shared permission bundles.

    Runs offline by default. With --create-bundles the candidates are created
    as entitlement bundles on the application.
    """
    settings = _build_settings(okta_domain, client_id, client_secret, private_key_path, api_token)
    _setup_logging(settings, verbose, json_logs)

    config = _load_config(config_path)
    csv_path = select_csv_file(csv_file, config, config_path)
    table = _load_table(csv_path)
    threshold = min_users if min_users is not None else config.role_mining.min_user_threshold

    if not create_bundles:
        report = _run(
            run_role_mining(
                table.rows,
                min_user_threshold=threshold,
                create_bundles=False,
                prefix=config.entitlement_prefix,
                identity_columns=config.identity_columns,
            ),
            verbose,
        )
        typer.echo(report.mining.summary(top=top))
        return

    _require_connection(settings)
    app_name = config.resolve_application_name(csv_path)
    report = _run(
        _async_mine(settings, config, table, app_name, threshold, dry_run),
        verbose,
    )
    typer.echo("\n" + report.summary())
    if report.errors:
        raise typer.Exit(1)


async def _async_mine(
    settings: OktaSettings,
    config: ConnectorConfig,
    table: Table,
    app_name: str,
    threshold: int,
    dry_run: bool,
):
    retry = config.retry_policy()
    async with OktaClient(settings) as client:
        app = await _require_application(client, app_name)
        resource_id = await _lookup_resource(client, app["id"])
        index = await load_entitlement_index(client, resource_id, app["id"], retry)
        return await run_role_mining(
            table.rows,
            client,
            app["id"],
            index,
            min_user_threshold=threshold,
            create_bundles=True,
            prefix=config.entitlement_prefix,
            identity_columns=config.identity_columns,
            dry_run=dry_run,
            retry=retry,
        )


# -----------------------------------------------------------------------------
# catalog
# -----------------------------------------------------------------------------


def catalog(
    csv_file: CsvArgument = None,
    config_path: ConfigOption = DEFAULT_CONFIG_FILE,
    verbose: VerboseOption = False,
) -> None:
    """Show how CSV columns are classified and the entitlement catalog they yield."""
    _setup_logging(None, verbose, False)

    config = _load_config(config_path)
    csv_path = select_csv_file(csv_file, config, config_path)
    table = _load_table(csv_path)
    prefix = config.entitlement_prefix

    columns = classify_columns(table.header, prefix)
    typer.echo(f"Columns ({len(columns)}):")
    for column in columns:
        if column.is_entitlement:
            typer.echo(f"  {column.name}: entitlement")
        elif column.canonical:
            typer.echo(f"  {column.name}: profile -> {column.canonical}")
        else:
            typer.echo(f"  {column.name}: profile (custom)")

    entries = build_catalog(table.rows, prefix)
    if not entries:
        typer.echo("\nNo entitlement columns found")
        return

    typer.echo(f"\nEntitlement catalog ({len(entries)} entitlements, {catalog_size(entries)} values):")
    for column, values in iter_catalog(entries):
        typer.echo(f"  {column}: {', '.join(values)}")


# -----------------------------------------------------------------------------
# status
# -----------------------------------------------------------------------------


def status(
    application: Annotated[
        Optional[str],
        typer.Option("--application", "-a", help="Application label"),
    ] = None,
    config_path: ConfigOption = DEFAULT_CONFIG_FILE,
    okta_domain: OktaDomainOption = None,
    client_id: ClientIdOption = None,
    client_secret: ClientSecretOption = None,
    private_key_path: PrivateKeyOption = None,
    api_token: ApiTokenOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show the application, its assigned users and its entitlements."""
    settings = _build_settings(okta_domain, client_id, client_secret, private_key_path, api_token)
    _setup_logging(settings, verbose, False)
    _require_connection(settings)

    config = _load_config(config_path)
    try:
        app_name = application or config.resolve_application_name()
    except ValueError as e:
        typer.secho(f"{e} (use --application)", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    _run(_async_status(settings, config, app_name), verbose)


async def _async_status(settings: OktaSettings, config: ConnectorConfig, app_name: str) -> None:
    retry = config.retry_policy()
    async with OktaClient(settings) as client:
        app = await _require_application(client, app_name)
        application_id = app["id"]
        typer.echo(f"Application: {app.get('label', app_name)} ({application_id})")
        typer.echo(f"Status: {app.get('status', 'UNKNOWN')}")

        snapshot = await fetch_snapshot(client, application_id, retry)
        typer.echo(f"Assigned users: {len(snapshot)}")

        resource_id = await _lookup_resource(client, application_id)
        typer.echo(f"Governance resource: {resource_id or 'not registered'}")

        index = await load_entitlement_index(client, resource_id, application_id, retry)
        typer.echo(f"Entitlements: {len(index)}")
        for entitlement in index:
            values = ", ".join(v.name for v in entitlement.values)
            typer.echo(f"  {entitlement.name}: {values or '(no values)'}")


def register_commands(app: typer.Typer) -> None:
    app.command("provision")(provision)
    app.command("sync")(sync)
    app.command("plan")(plan)
    app.command("mine")(mine)
    app.command("catalog")(catalog)
    app.command("status")(status)
