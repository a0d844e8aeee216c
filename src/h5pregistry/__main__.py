"""CLI entry point for the H5P package registry."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from h5pregistry import __version__
from h5pregistry.api.middleware import setup_logging
from h5pregistry.config import ConfigError, Settings
from h5pregistry.registry.errors import RegistryError
from h5pregistry.registry.manifest import ArchiveReader
from h5pregistry.registry.models import EdgeType, Provenance
from h5pregistry.registry.store import LATEST
from h5pregistry.services import RegistryServices

console = Console()


def _services(ctx: click.Context) -> RegistryServices:
    if "services" not in ctx.obj:
        ctx.obj["services"] = RegistryServices.from_settings(ctx.obj["settings"])
        ctx.call_on_close(ctx.obj["services"].close)
    return ctx.obj["services"]


def _fail(message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/red]")
    sys.exit(1)


def _package_id(services: RegistryServices, ref: str) -> int:
    if ref.isascii() and ref.isdigit():
        return int(ref)
    name, _, constraint = ref.partition("@")
    package = services.store.get(
        name, constraint or LATEST, host=services.settings.host_runtime
    )
    return package.id


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="YAML config file (default: $H5PREGISTRY_CONFIG)",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool):
    """H5P package registry - install, resolve and mirror content types."""
    ctx.ensure_object(dict)
    try:
        settings = Settings.load(config_path)
    except ConfigError as e:
        _fail(str(e))
    if verbose:
        settings.log_level = "DEBUG"
    setup_logging(settings.log_level)
    ctx.obj["settings"] = settings


@cli.command()
@click.pass_context
def init(ctx: click.Context):
    """Create the database and blob directories."""
    services = _services(ctx)
    console.print(f"[green]✓ Registry initialized at {services.settings.db_path}[/green]")
    console.print(f"[dim]Blobs: {services.settings.blob_root}[/dim]")


@cli.command()
@click.argument("archive", type=click.Path(exists=True, dir_okay=False))
def validate(archive: str):
    """Validate a package archive without installing it."""
    reader = ArchiveReader(Path(archive).read_bytes())
    result = reader.validate()

    for warning in result.warnings:
        console.print(f"[yellow]Warning: {warning.path}: {warning.message}[/yellow]")
    if not result.valid:
        for error in result.errors:
            console.print(f"[red]✗ {error.path}: {error.message}[/red]")
        sys.exit(1)

    pkg = reader.archive
    console.print(f"[green]✓ Valid package, main library {pkg.main.identity}[/green]")
    for lib in pkg.libraries:
        deps = ", ".join(str(d) for d in lib.dependencies) or "-"
        console.print(f"  {lib.identity}  [dim]deps: {deps}[/dim]")


@cli.command()
@click.argument("archive", type=click.Path(exists=True, dir_okay=False), required=False)
@click.option("--from-hub", "hub_name", default=None, help="Fetch this content type from the hub")
@click.option(
    "--provenance",
    "-p",
    type=click.Choice([p.value for p in Provenance]),
    default=Provenance.CURATED.value,
    help="Catalog the package belongs to",
)
@click.option("--owner", "owner_tenant", default=None, help="Owning tenant (custom only)")
@click.pass_context
def install(
    ctx: click.Context,
    archive: str | None,
    hub_name: str | None,
    provenance: str,
    owner_tenant: str | None,
):
    """Install a package archive (.h5p), or one content type from the hub.

    Hub installs are always upstream; --provenance and --owner do not apply.
    """
    if bool(archive) == bool(hub_name):
        _fail("Give either an ARCHIVE or --from-hub NAME")

    services = _services(ctx)
    try:
        if hub_name:
            result = services.mirror.install_one(hub_name)
        else:
            result = services.installer.install(
                Path(archive).read_bytes(), provenance, owner_tenant_id=owner_tenant
            )
    except RegistryError as e:
        _fail(str(e))

    console.print(f"[green]✓ {result.message}[/green]")
    for lib in result.libraries:
        style = "dim" if lib.status == "unchanged" else "cyan"
        console.print(f"  [{style}]{lib.status:<10}[/{style}] {lib.identity} (id {lib.package_id})")


@cli.command()
@click.option("--tenant", "-t", required=True, help="Tenant id")
@click.option("--user", "-u", default=None, help="Requesting user id")
@click.option("--latest-only", is_flag=True, help="Only the latest version per name")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def catalog(ctx: click.Context, tenant: str, user: str | None, latest_only: bool, as_json: bool):
    """Show a tenant's merged catalog."""
    services = _services(ctx)
    entries = services.catalog.catalog(tenant, user_id=user, latest_only=latest_only)

    if as_json:
        click.echo(json.dumps([e.to_dict() for e in entries], indent=2))
        return

    if not entries:
        console.print(f"[yellow]Catalog for {tenant} is empty[/yellow]")
        return

    table = Table(title=f"Catalog: {tenant}")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Machine name", style="cyan")
    table.add_column("Version")
    table.add_column("Provenance", style="yellow")
    table.add_column("Title")
    table.add_column("Flags")

    for entry in entries:
        flags = []
        if entry.update_available:
            flags.append(f"[green]update → {entry.latest_version}[/green]")
        if entry.restricted:
            flags.append("[red]restricted[/red]" if not entry.actionable else "restricted")
        table.add_row(
            str(entry.package.id),
            entry.package.name,
            str(entry.package.version),
            entry.package.provenance.value,
            entry.package.title,
            " ".join(flags),
        )
    console.print(table)


@cli.command()
@click.argument("package")
@click.option(
    "--edge-types",
    "-e",
    default=EdgeType.REQUIRED_AT_LOAD.value,
    show_default=True,
    help="Comma-separated edge types",
)
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def resolve(ctx: click.Context, package: str, edge_types: str, as_json: bool):
    """Print the load order for a package version.

    PACKAGE is a version id, or NAME[@VERSION]; a bare name or NAME@latest
    picks the highest version the configured host runtime can run.
    """
    services = _services(ctx)
    try:
        types = EdgeType.parse_csv(edge_types)
        package_id = _package_id(services, package)
        items = services.resolver.load_manifest(package_id, types)
    except (ValueError, RegistryError) as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps([item.to_dict() for item in items], indent=2))
        return

    for position, item in enumerate(items, 1):
        console.print(f"{position:>3}. [cyan]{item.package.identity}[/cyan]")
        for url in item.js + item.css:
            console.print(f"       [dim]{url}[/dim]")


@cli.command()
@click.pass_context
def sync(ctx: click.Context):
    """Mirror new upstream versions from the hub."""
    services = _services(ctx)
    console.print(f"[bold blue]Syncing from {services.settings.hub_url}...[/bold blue]")
    report = services.mirror.sync()

    if report.listing_error:
        _fail(f"Listing failed: {report.listing_error}")

    console.print(
        f"[green]✓ {len(report.added)} added, {len(report.updated)} updated, "
        f"{len(report.unchanged)} unchanged[/green]"
    )
    for failure in report.failed:
        console.print(f"[red]✗ {failure.name}: {escape(failure.error)}[/red]")
    if report.failed:
        sys.exit(1)


@cli.command()
@click.argument("package_id", type=int)
@click.pass_context
def delete(ctx: click.Context, package_id: int):
    """Delete a package version nothing depends on."""
    services = _services(ctx)
    try:
        package = services.installer.uninstall(package_id)
    except RegistryError as e:
        dependents = getattr(e, "dependents", None)
        if dependents:
            console.print(f"[dim]Dependents: {', '.join(dependents)}[/dim]")
        _fail(str(e))
    console.print(f"[green]✓ Deleted {package.identity}[/green]")


@cli.command()
@click.argument("tenant")
@click.argument("package_id", type=int)
@click.argument(
    "action",
    type=click.Choice(["enable", "disable", "restrict", "unrestrict", "reset", "show"]),
)
@click.pass_context
def overlay(ctx: click.Context, tenant: str, package_id: int, action: str):
    """Change or show a tenant's overlay for a package version."""
    overlays = _services(ctx).overlays
    try:
        if action != "show":
            getattr(overlays, action)(tenant, package_id)
        state = overlays.effective(tenant, package_id)
    except RegistryError as e:
        _fail(str(e))

    if state is None:
        console.print(f"[yellow]Package {package_id} is not visible to {tenant}[/yellow]")
        return
    console.print(
        f"{tenant} / {package_id}: enabled={state.enabled} restricted={state.restricted}"
    )


@cli.command()
@click.option("--host", default="127.0.0.1", help="Host to bind")
@click.option("--port", default=47300, type=int, help="Port to bind")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int):
    """Start the API server."""
    from h5pregistry.api.app import run_server

    console.print(f"[bold blue]Starting registry on {host}:{port}[/bold blue]")
    run_server(ctx.obj["settings"], host=host, port=port)


if __name__ == "__main__":
    cli()
