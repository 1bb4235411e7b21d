from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps
from importlib import metadata
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape

from gcp_iam import config as configuration
from gcp_iam import log
from gcp_iam.compare import RoleComparison
from gcp_iam.errors import GcpIamError
from gcp_iam.fetcher import CatalogFetcher
from gcp_iam.models import strip_role_prefix
from gcp_iam.store import Store
from gcp_iam.sync import Synchronizer

out = Console(highlight=False, soft_wrap=True)


def echo(*lines: str) -> None:
    for line in lines:
        out.print(line, markup=False)


def default_fetcher(runtime: "Runtime") -> CatalogFetcher:
    return CatalogFetcher(page_size=runtime.config.sync.page_size)


@dataclass
class Runtime:
    """Everything one invocation needs, built once and handed to each command."""

    config: configuration.ConfigConfig
    fetcher_factory: Callable[["Runtime"], CatalogFetcher] = default_fetcher
    _store: Store | None = field(default=None, repr=False)

    @property
    def store(self) -> Store:
        if self._store is None:
            self._store = Store.open(self.config.database.path)
        return self._store

    def synchronizer(self) -> Synchronizer:
        return Synchronizer(self.store, self.fetcher_factory(self))

    def close(self) -> None:
        if self._store is not None:
            self._store.close()
            self._store = None


def handles_errors[**P](fn: Callable[P, None]) -> Callable[P, None]:
    @wraps(fn)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except GcpIamError as exc:
            log.console.print(
                f"[red]Error:[/red] {escape(str(exc))}", highlight=False, soft_wrap=True
            )
            raise typer.Exit(1) from exc

    return wrapper


def runtime(ctx: typer.Context) -> Runtime:
    return ctx.obj


cli = typer.Typer(
    name="gcp-iam",
    help="Query Google Cloud IAM Roles and Permissions",
    no_args_is_help=True,
    add_completion=False,
)
role_cli = typer.Typer(help="Query IAM Roles", no_args_is_help=True)
permission_cli = typer.Typer(help="Query IAM Permissions", no_args_is_help=True)
service_cli = typer.Typer(help="Query Google Cloud services", no_args_is_help=True)
cli.add_typer(role_cli, name="role")
cli.add_typer(permission_cli, name="permission")
cli.add_typer(service_cli, name="service")


@cli.callback()
@handles_errors
def main(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option(
            "--config",
            envvar=configuration.CONFIG_ENV,
            help="Config file (.toml, .json, .yaml)",
        ),
    ] = None,
    verbose: Annotated[
        int, typer.Option("--verbose", "-v", count=True, help="-v for INFO, -vv for DEBUG")
    ] = 0,
) -> None:
    if ctx.obj is None:
        ctx.obj = Runtime(configuration.resolve(config_path))
    rt = runtime(ctx)
    log.configure(log.level_for(verbose, rt.config.logging.level))
    ctx.call_on_close(rt.close)


@role_cli.command("show")
@handles_errors
def role_show(ctx: typer.Context, name: str) -> None:
    """Show IAM role permissions, e.g. `gcp-iam role show storage.admin`."""
    store = runtime(ctx).store
    name = strip_role_prefix(name)
    role = store.get_role(name)
    if role is None:
        echo(f"Role '{name}' not found")
        return
    permissions = store.role_permissions(role.name)
    echo(
        f"Role: {role.name}",
        f"Title: {role.title}",
        f"Description: {role.description}",
        f"Stage: {role.stage}",
        f"Permissions ({len(permissions)}):",
        *(f"  - {p}" for p in permissions),
    )


@role_cli.command("search")
@handles_errors
def role_search(ctx: typer.Context, query: str) -> None:
    """Search IAM roles by name, title or description."""
    roles = runtime(ctx).store.search_roles(query)
    echo(
        f"Found {len(roles)} roles matching '{query}':",
        *(f"  {role.name} - {role.title}" for role in roles),
    )


@role_cli.command("compare")
@handles_errors
def role_compare(ctx: typer.Context, first: str, second: str) -> None:
    """Compare permissions of 2 IAM roles."""
    store = runtime(ctx).store
    roles = []
    for name in (strip_role_prefix(first), strip_role_prefix(second)):
        role = store.get_role(name)
        if role is None:
            echo(f"Role '{name}' not found")
            raise typer.Exit(1)
        roles.append(role)
    comparison = RoleComparison(
        roles[0],
        roles[1],
        store.role_permissions(roles[0].name),
        store.role_permissions(roles[1].name),
    )
    echo(*comparison.lines())


@role_cli.command("list")
@handles_errors
def role_list(ctx: typer.Context) -> None:
    """List all cached IAM roles."""
    echo(*(f"{role.name} - {role.title}" for role in runtime(ctx).store.list_roles()))


@permission_cli.command("show")
@handles_errors
def permission_show(ctx: typer.Context, name: str) -> None:
    """Show IAM roles with permission, e.g. `gcp-iam permission show storage.objects.get`."""
    store = runtime(ctx).store
    permission = store.get_permission(name)
    if permission is None:
        echo(f"Permission '{name}' not found")
        return
    roles = store.roles_with_permission(permission.permission)
    echo(
        f"Permission: {permission.permission}",
        f"Roles with this permission ({len(roles)}):",
        *(f"  {role.name} - {role.title}" for role in roles),
    )


@permission_cli.command("search")
@handles_errors
def permission_search(ctx: typer.Context, query: str) -> None:
    """Search IAM permissions by name."""
    permissions = runtime(ctx).store.search_permissions(query)
    echo(
        f"Found {len(permissions)} permissions matching '{query}':",
        *(f"  {p}" for p in permissions),
    )


@service_cli.command("show")
@handles_errors
def service_show(ctx: typer.Context, name: str) -> None:
    """Show a Google Cloud service, e.g. `gcp-iam service show compute.googleapis.com`."""
    service = runtime(ctx).store.get_service(name)
    if service is None:
        echo(f"Service '{name}' not found")
        return
    echo(f"Service: {service.name}", f"Title: {service.title}")


@service_cli.command("search")
@handles_errors
def service_search(ctx: typer.Context, query: str) -> None:
    """Search Google Cloud services by name or title."""
    services = runtime(ctx).store.search_services(query)
    echo(
        f"Found {len(services)} services matching '{query}':",
        *(f"  {s.name} - {s.title}" for s in services),
    )


@cli.command("update")
@handles_errors
def update(
    ctx: typer.Context,
    services: Annotated[
        bool | None, typer.Option("--services/--no-services", help="Also sync services")
    ] = None,
    retire: Annotated[
        bool | None,
        typer.Option("--retire/--no-retire", help="Flag roles gone upstream as deleted"),
    ] = None,
) -> None:
    """Update IAM roles, permissions and services from Google Cloud.

    Role metadata is always refreshed. Permissions are only fetched for roles
    that have none stored yet. Requires `gcloud auth login --update-adc`.
    """
    rt = runtime(ctx)
    sync = rt.config.sync
    echo("Updating GCP IAM pre-defined roles and permissions...")
    report = rt.synchronizer().run(
        services=sync.services if services is None else services,
        retire=sync.retire if retire is None else retire,
    )
    echo(*report.lines())
    if report.refresh_failed:
        echo(f"Warning: {len(report.refresh_failed)} roles could not be refreshed")
    echo("Successfully updated IAM roles and permissions")


cli.command("sync", hidden=True)(update)


@cli.command("info")
@handles_errors
def info(ctx: typer.Context) -> None:
    """Show database statistics and file locations."""
    rt = runtime(ctx)
    store = rt.store
    echo(
        "GCP IAM Configuration:",
        f"  Roles:        {store.count_roles()}",
        f"  Permissions:  {store.count_permissions()}",
        f"  Services:     {store.count_services()}",
        f"  ConfigFile:   {rt.config.source}",
        f"  DatabasePath: {rt.config.database.path}",
    )


@cli.command("config")
@handles_errors
def show_config(ctx: typer.Context) -> None:
    """Print the effective configuration as toml."""
    out.print(runtime(ctx).config.dumps(), markup=False, end="")


@cli.command("version")
def version() -> None:
    """Show version information."""
    try:
        echo(f"Version: {metadata.version('gcp-iam')}")
    except metadata.PackageNotFoundError:
        echo("Version: unknown")


@cli.command("complete-roles", hidden=True)
@handles_errors
def complete_roles(ctx: typer.Context) -> None:
    echo(*runtime(ctx).store.role_names())


@cli.command("complete-permissions", hidden=True)
@handles_errors
def complete_permissions(ctx: typer.Context) -> None:
    echo(*runtime(ctx).store.permission_names())
