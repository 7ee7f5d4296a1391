"""GreenLake Orchestrator CLI (glo).

Every command runs one batch operation and prints one status line per
identifier, in input order.

Usage:
    glo devices assign SN1 SN2 --service "Compute Ops Management" --region eu-central
    glo devices unassign SN1 SN2
    glo servers set-location SRV1 SRV2 --location "Lab A"
    glo servers remove-location SRV1
    glo services provision "Compute Ops Management" --region eu-central
    glo credentials create my-client --service "Compute Ops Management"
    glo webhooks disable hook-a hook-b
    glo policies list
    glo batch run devices.yaml

Exit codes:
    0  every identifier completed or needed no action
    1  the operation could not run (configuration, target, upstream)
    3  at least one identifier failed
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
from azure.core.exceptions import AzureError

from .batch_loader import BatchFileError, BatchOperationName, BatchRequest, load_batch
from .client import GreenLakeClient, StaticTokenCredential
from .config import Config, ConfigurationError, OutputFormat
from .ledger import InvalidIdentifiers
from .operations import Operations
from .presentation import render_ledger, render_policies, render_summary
from .reconciler import ReconcileResult, TargetResolutionError
from .resolver import UpstreamUnavailable
from .session import SessionStore

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

EXIT_RECORD_FAILURES = 3

# Errors that stop an operation before any identifier is classified
FATAL_ERRORS = (
    ConfigurationError,
    InvalidIdentifiers,
    TargetResolutionError,
    UpstreamUnavailable,
    AzureError,
)


class CliState:
    """Global options plus lazily built session objects.

    Configuration is only loaded when a command actually runs, so --help
    works without any environment set.
    """

    def __init__(
        self,
        output: str | None,
        dry_run: bool,
        region: str | None,
    ) -> None:
        self.output = output
        self.dry_run = dry_run
        self.region = region
        self._config: Config | None = None
        self._operations: Operations | None = None

    @property
    def config(self) -> Config:
        if self._config is None:
            config = Config.from_env()
            overrides: dict[str, Any] = {}
            if self.output:
                overrides["output_format"] = OutputFormat(self.output)
            if self.dry_run:
                overrides["dry_run"] = True
            if self.region:
                overrides["default_region"] = self.region
            self._config = dataclasses.replace(config, **overrides) if overrides else config
        return self._config

    def operations(self, ctx: click.Context) -> Operations:
        if self._operations is None:
            config = self.config
            if not config.token:
                raise ConfigurationError("GLP_TOKEN is required to call the GreenLake API")
            client = GreenLakeClient(config, StaticTokenCredential(config.token))
            store = SessionStore()
            ctx.call_on_close(store.clear)
            ctx.call_on_close(client.close)
            self._operations = Operations(client, store)
        return self._operations


def _run(
    ctx: click.Context,
    action: Callable[[Operations], ReconcileResult],
    after: Callable[[Operations], None] | None = None,
) -> None:
    """Run one operation, print its ledger, and set the exit code."""
    state: CliState = ctx.find_object(CliState)
    try:
        result = action(state.operations(ctx))
    except FATAL_ERRORS as e:
        raise click.ClickException(str(e)) from e

    records = result.records
    fmt = state.config.output_format
    click.echo(render_ledger(records, fmt, color=fmt == OutputFormat.TABLE))
    if fmt == OutputFormat.TABLE:
        click.echo(f"\n{result.operation}: {render_summary(records)}")
    if after is not None:
        after(state.operations(ctx))
    if not result.success:
        ctx.exit(EXIT_RECORD_FAILURES)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="glo")
@click.option(
    "--output",
    "-o",
    type=click.Choice([f.value for f in OutputFormat]),
    help="Output format (default: GLP_OUTPUT_FORMAT or table)",
)
@click.option("--dry-run", is_flag=True, help="Classify only; do not change anything")
@click.option("--region", "-r", help="Region (default: GLP_DEFAULT_REGION)")
@click.pass_context
def cli(ctx: click.Context, output: str | None, dry_run: bool, region: str | None) -> None:
    """GreenLake Orchestrator CLI (glo).

    Batch operations against an HPE GreenLake workspace. Configure with
    GLP_WORKSPACE_ID and GLP_TOKEN.
    """
    ctx.obj = CliState(output=output, dry_run=dry_run, region=region)


# =============================================================================
# Devices
# =============================================================================


@cli.group()
def devices() -> None:
    """Device to service assignment."""
    pass


@devices.command("assign")
@click.argument("serial_numbers", nargs=-1, required=True)
@click.option("--service", "-s", required=True, help="Service name or id")
@click.pass_context
def devices_assign(ctx: click.Context, serial_numbers: tuple[str, ...], service: str) -> None:
    """Assign devices to a service in a region."""
    _run(ctx, lambda ops: ops.assign_devices_to_service(serial_numbers, service))


@devices.command("unassign")
@click.argument("serial_numbers", nargs=-1, required=True)
@click.pass_context
def devices_unassign(ctx: click.Context, serial_numbers: tuple[str, ...]) -> None:
    """Remove devices from their service."""
    _run(ctx, lambda ops: ops.unassign_devices_from_service(serial_numbers))


# =============================================================================
# Servers
# =============================================================================


@cli.group()
def servers() -> None:
    """Compute Ops Management server locations."""
    pass


@servers.command("set-location")
@click.argument("server_names", nargs=-1, required=True)
@click.option("--location", "-l", required=True, help="Location name or id")
@click.pass_context
def servers_set_location(
    ctx: click.Context, server_names: tuple[str, ...], location: str
) -> None:
    """Assign a location to OneView-managed servers."""
    _run(ctx, lambda ops: ops.set_server_location(server_names, location))


@servers.command("remove-location")
@click.argument("server_names", nargs=-1, required=True)
@click.pass_context
def servers_remove_location(ctx: click.Context, server_names: tuple[str, ...]) -> None:
    """Clear the location of OneView-managed servers."""
    _run(ctx, lambda ops: ops.remove_server_location(server_names))


# =============================================================================
# Services and API credentials
# =============================================================================


@cli.group()
def services() -> None:
    """Service provisioning."""
    pass


@services.command("provision")
@click.argument("service")
@click.pass_context
def services_provision(ctx: click.Context, service: str) -> None:
    """Provision a service in a region and wait for it."""
    _run(ctx, lambda ops: ops.provision_service(service))


@cli.group()
def credentials() -> None:
    """Personal API credentials."""
    pass


@credentials.command("create")
@click.argument("name")
@click.option("--service", "-s", required=True, help="Service name or id")
@click.pass_context
def credentials_create(ctx: click.Context, name: str, service: str) -> None:
    """Create an API credential and print its secret once."""
    def show_secret(ops: Operations) -> None:
        cached = ops.session.credential(name)
        if cached is None:
            return
        click.secho("\nStore this secret now; it cannot be retrieved again.", fg="yellow", err=True)
        click.echo(f"client_id: {cached.client_id}")
        click.echo(f"client_secret: {cached.client_secret}")

    _run(ctx, lambda ops: ops.create_api_credential(name, service), after=show_secret)


# =============================================================================
# Webhooks
# =============================================================================


@cli.group()
def webhooks() -> None:
    """Compute Ops Management webhooks."""
    pass


@webhooks.command("remove")
@click.argument("names", nargs=-1, required=True)
@click.pass_context
def webhooks_remove(ctx: click.Context, names: tuple[str, ...]) -> None:
    """Delete webhooks by name or id."""
    _run(ctx, lambda ops: ops.remove_webhooks(names))


@webhooks.command("enable")
@click.argument("names", nargs=-1, required=True)
@click.pass_context
def webhooks_enable(ctx: click.Context, names: tuple[str, ...]) -> None:
    """Enable webhooks by name or id."""
    _run(ctx, lambda ops: ops.set_webhook_state(names, enabled=True))


@webhooks.command("disable")
@click.argument("names", nargs=-1, required=True)
@click.pass_context
def webhooks_disable(ctx: click.Context, names: tuple[str, ...]) -> None:
    """Disable webhooks by name or id."""
    _run(ctx, lambda ops: ops.set_webhook_state(names, enabled=False))


# =============================================================================
# Resource restriction policies
# =============================================================================


@cli.group()
def policies() -> None:
    """Resource restriction policies (read only)."""
    pass


@policies.command("list")
@click.argument("names", nargs=-1)
@click.pass_context
def policies_list(ctx: click.Context, names: tuple[str, ...]) -> None:
    """List restriction policies with their scopes."""
    state: CliState = ctx.find_object(CliState)
    try:
        found = state.operations(ctx).list_resource_restriction_policies(names or None)
    except FATAL_ERRORS as e:
        raise click.ClickException(str(e)) from e
    click.echo(render_policies(found, state.config.output_format))


# =============================================================================
# Batch files
# =============================================================================


def dispatch(ops: Operations, request: BatchRequest) -> ReconcileResult:
    """Run the operation a batch file names."""
    name = request.operation
    region = request.region
    if name == BatchOperationName.ASSIGN_DEVICES:
        return ops.assign_devices_to_service(request.identifiers, request.service, region)
    if name == BatchOperationName.UNASSIGN_DEVICES:
        return ops.unassign_devices_from_service(request.identifiers)
    if name == BatchOperationName.SET_SERVER_LOCATION:
        return ops.set_server_location(request.identifiers, request.location, region)
    if name == BatchOperationName.REMOVE_SERVER_LOCATION:
        return ops.remove_server_location(request.identifiers, region)
    if name == BatchOperationName.REMOVE_WEBHOOKS:
        return ops.remove_webhooks(request.identifiers, region)
    if name == BatchOperationName.ENABLE_WEBHOOKS:
        return ops.set_webhook_state(request.identifiers, True, region)
    if name == BatchOperationName.DISABLE_WEBHOOKS:
        return ops.set_webhook_state(request.identifiers, False, region)
    raise ValueError(f"Unsupported batch operation: {name.value}")


@cli.group()
def batch() -> None:
    """Operations driven from YAML batch files."""
    pass


@batch.command("run")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def batch_run(ctx: click.Context, path: Path) -> None:
    """Run the operation described in a batch file."""
    try:
        request = load_batch(path)
    except BatchFileError as e:
        raise click.ClickException(str(e)) from e
    _run(ctx, lambda ops: dispatch(ops, request))


@batch.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def batch_validate(path: Path) -> None:
    """Validate a batch file without contacting GreenLake."""
    try:
        request = load_batch(path)
    except BatchFileError as e:
        raise click.ClickException(str(e)) from e
    click.secho(
        f"✓ {path}: {request.operation.value} with {len(request.identifiers)} identifier(s)",
        fg="green",
    )
