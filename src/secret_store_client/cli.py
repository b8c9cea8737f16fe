"""CLI for the secret store client.

Commands:
- get: Fetch a secret (value masked unless --reveal)
- put: Create or replace a secret
- delete: Soft-delete a secret
- list: List keys in a namespace
- versions: Show the version history of a secret
- rollback: Restore an earlier version as a new version
- audit: Query the audit log
- export: Render a namespace as dotenv/shell/JSON/docker-compose
- namespaces: List namespaces
- health: Check service readiness
- stats: Show effective client settings and cache counters
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Annotated, Protocol

import typer
from rich import print as rprint
from rich.markup import escape
from rich.table import Table

from . import __version__
from .client import SecretStoreClient
from .config import ClientConfig
from .config_file import load_client_config_file
from .exceptions import SecretStoreError
from .models import ALL_KEYS, AuditQuery, ExportFormat
from .telemetry import LoggingTelemetryHook

MASKED_VALUE = "********"


class DependenciesBuilder(Protocol):
    """Protocol for constructing CLI dependencies."""

    def __call__(self, *, config: ClientConfig) -> CliDependencies:
        """Build dependencies for CLI commands."""
        ...


@dataclass(frozen=True)
class CliDependencies:
    """Concrete dependencies required by the CLI."""

    client: SecretStoreClient


@dataclass(frozen=True)
class CliContext:
    """Runtime CLI context for a single command invocation."""

    config: ClientConfig
    deps_builder: DependenciesBuilder

    def build_dependencies(self, *, config: ClientConfig | None = None) -> CliDependencies:
        """Return dependencies using the configured builder."""
        return self.deps_builder(config=config or self.config)


class CliContextNotInitialisedError(typer.BadParameter):
    """Raised when CLI context is missing."""

    def __init__(self) -> None:
        super().__init__("CLI context is not initialised. Use the secret-store entry point.")


def _get_context(ctx: typer.Context) -> CliContext:
    if not isinstance(ctx.obj, CliContext):
        raise CliContextNotInitialisedError()
    return ctx.obj


@contextmanager
def _client(ctx: typer.Context) -> Iterator[SecretStoreClient]:
    """Yield a client; report library errors and exit non-zero."""
    state = _get_context(ctx)
    try:
        deps = state.build_dependencies()
        with deps.client as client:
            yield client
    except SecretStoreError as exc:
        rprint(f"[red]✗ {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc


def _version_callback(value: bool) -> None:
    if value:
        rprint(f"secret-store {__version__}")
        raise typer.Exit()


def create_app(deps_builder: DependenciesBuilder) -> typer.Typer:
    """Create a Typer app wired with the provided dependencies builder."""
    app = typer.Typer(
        add_completion=False,
        help="Secret store client: read, write, version, audit and export secrets",
    )

    @app.callback()
    def main(
        ctx: typer.Context,
        url: Annotated[
            str | None,
            typer.Option("--url", "-u", help="Base URL (default: SECRET_STORE_URL)"),
        ] = None,
        config_path: Annotated[
            Path | None,
            typer.Option("--config", "-c", help="TOML config file with a [client] section"),
        ] = None,
        timeout: Annotated[
            float | None,
            typer.Option("--timeout", help="Per-attempt timeout in seconds"),
        ] = None,
        retries: Annotated[
            int | None,
            typer.Option("--retries", help="Maximum retries per call"),
        ] = None,
        insecure: Annotated[
            bool,
            typer.Option("--insecure", help="Allow plain-HTTP base URLs"),
        ] = False,
        verbose: Annotated[
            bool,
            typer.Option("--verbose", "-v", help="Log every request, retry and cache event"),
        ] = False,
        version: Annotated[
            bool,
            typer.Option(
                "--version",
                callback=_version_callback,
                is_eager=True,
                help="Show the package version and exit",
            ),
        ] = False,
    ) -> None:
        """Initialise CLI context."""
        _ = version
        try:
            config = ClientConfig.from_env()
            if config_path is not None:
                config = config.with_file_overrides(load_client_config_file(config_path))
        except SecretStoreError as exc:
            rprint(f"[red]✗ {escape(str(exc))}[/red]")
            raise typer.Exit(code=2) from exc
        config = config.with_overrides(
            base_url=url,
            timeout_seconds=timeout,
            max_retries=retries,
            allow_insecure_http=True if insecure else None,
        )
        if verbose:
            config = replace(config, telemetry_hook=LoggingTelemetryHook())
        ctx.obj = CliContext(config=config, deps_builder=deps_builder)

    @app.command()
    def get(
        ctx: typer.Context,
        namespace: Annotated[str, typer.Argument(help="Namespace")],
        key: Annotated[str, typer.Argument(help="Secret key")],
        reveal: Annotated[
            bool,
            typer.Option("--reveal", help="Print the plaintext value"),
        ] = False,
        version: Annotated[
            int | None,
            typer.Option("--version", help="Fetch a specific version"),
        ] = None,
    ) -> None:
        """Fetch a secret. The value is masked unless --reveal is given."""
        with _client(ctx) as client:
            if version is None:
                secret = client.get_secret(namespace, key)
            else:
                secret = client.get_version(namespace, key, version)
            value = secret.reveal() if reveal else MASKED_VALUE
            rprint(f"[bold]{escape(namespace)}/{escape(key)}[/bold] (version {secret.version})")
            rprint(f"  Updated: {secret.updated_at.isoformat()}")
            if secret.expires_at is not None:
                rprint(f"  Expires: {secret.expires_at.isoformat()}")
            rprint(f"  Value: {escape(value)}")

    @app.command()
    def put(
        ctx: typer.Context,
        namespace: Annotated[str, typer.Argument(help="Namespace")],
        key: Annotated[str, typer.Argument(help="Secret key")],
        value: Annotated[
            str,
            typer.Option("--value", prompt=True, hide_input=True, help="Secret value"),
        ],
        ttl: Annotated[
            int | None,
            typer.Option("--ttl", help="Time to live in seconds"),
        ] = None,
        idempotency_key: Annotated[
            str | None,
            typer.Option("--idempotency-key", help="Replay-safe token for this write"),
        ] = None,
    ) -> None:
        """Create or replace a secret."""
        with _client(ctx) as client:
            result = client.put_secret(
                namespace, key, value, ttl_seconds=ttl, idempotency_key=idempotency_key
            )
        suffix = f" (version {result.version})" if result.version is not None else ""
        rprint(f"[green]✓ Stored:[/green] {escape(namespace)}/{escape(key)}{suffix}")

    @app.command()
    def delete(
        ctx: typer.Context,
        namespace: Annotated[str, typer.Argument(help="Namespace")],
        key: Annotated[str, typer.Argument(help="Secret key")],
    ) -> None:
        """Soft-delete a secret."""
        with _client(ctx) as client:
            result = client.delete_secret(namespace, key)
        if result.deleted:
            rprint(f"[green]✓ Deleted:[/green] {escape(namespace)}/{escape(key)}")
        else:
            rprint(f"[yellow]Nothing deleted:[/yellow] {escape(namespace)}/{escape(key)}")

    @app.command(name="list")
    def list_keys(
        ctx: typer.Context,
        namespace: Annotated[str, typer.Argument(help="Namespace")],
        prefix: Annotated[
            str | None,
            typer.Option("--prefix", "-p", help="Only keys starting with this prefix"),
        ] = None,
        limit: Annotated[
            int | None,
            typer.Option("--limit", "-n", help="Maximum number of keys"),
        ] = None,
    ) -> None:
        """List secret keys in a namespace."""
        with _client(ctx) as client:
            result = client.list_secrets(namespace, prefix=prefix, limit=limit)
        table = Table("Key", "Version", "Updated")
        for info in result.secrets:
            table.add_row(escape(info.key), str(info.version), info.updated_at)
        rprint(table)
        more = " (more available)" if result.has_more else ""
        rprint(f"{result.total:,} key(s){more}")

    @app.command()
    def versions(
        ctx: typer.Context,
        namespace: Annotated[str, typer.Argument(help="Namespace")],
        key: Annotated[str, typer.Argument(help="Secret key")],
    ) -> None:
        """Show the version history of a secret."""
        with _client(ctx) as client:
            result = client.list_versions(namespace, key)
        table = Table("Version", "Created", "By", "Comment", "Current")
        for info in result.versions:
            table.add_row(
                str(info.version),
                info.created_at,
                escape(info.created_by),
                escape(info.comment or ""),
                "✓" if info.is_current else "",
            )
        rprint(table)

    @app.command()
    def rollback(
        ctx: typer.Context,
        namespace: Annotated[str, typer.Argument(help="Namespace")],
        key: Annotated[str, typer.Argument(help="Secret key")],
        version: Annotated[int, typer.Argument(help="Version to restore")],
    ) -> None:
        """Restore an earlier version; the restored value gets a new version number."""
        with _client(ctx) as client:
            result = client.rollback(namespace, key, version)
        rprint(
            f"[green]✓ Rolled back:[/green] {escape(namespace)}/{escape(key)} "
            f"v{result.from_version} → v{result.to_version}"
        )

    @app.command()
    def audit(
        ctx: typer.Context,
        namespace: Annotated[
            str | None,
            typer.Option("--namespace", help="Only entries for this namespace"),
        ] = None,
        actor: Annotated[str | None, typer.Option("--actor", help="Only this actor")] = None,
        action: Annotated[str | None, typer.Option("--action", help="Only this action")] = None,
        failed_only: Annotated[
            bool,
            typer.Option("--failed-only", help="Only failed operations"),
        ] = False,
        limit: Annotated[
            int,
            typer.Option("--limit", "-n", help="Maximum number of entries"),
        ] = 50,
    ) -> None:
        """Query the audit log."""
        query = AuditQuery(
            namespace=namespace,
            actor=actor,
            action=action,
            success=False if failed_only else None,
            limit=limit,
        )
        with _client(ctx) as client:
            result = client.audit(query)
        table = Table("Time", "Actor", "Action", "Target", "OK")
        for entry in result.entries:
            target = "/".join(part for part in (entry.namespace, entry.key_name) if part)
            table.add_row(
                entry.timestamp,
                escape(entry.actor or ""),
                escape(entry.action),
                escape(target),
                "✓" if entry.success else "✗",
            )
        rprint(table)
        rprint(f"{len(result.entries):,} of {result.total:,} entries")

    @app.command()
    def export(
        ctx: typer.Context,
        namespace: Annotated[str, typer.Argument(help="Namespace")],
        export_format: Annotated[
            ExportFormat,
            typer.Option("--format", "-f", help="Output format"),
        ] = ExportFormat.DOTENV,
        key: Annotated[
            list[str] | None,
            typer.Option("--key", "-k", help="Export only this key (repeatable)"),
        ] = None,
        output: Annotated[
            Path | None,
            typer.Option("--output", "-o", help="Write to a file instead of stdout"),
        ] = None,
    ) -> None:
        """Render a namespace's secrets for use as environment variables."""
        with _client(ctx) as client:
            text = client.export_env(namespace, export_format, keys=key or ALL_KEYS)
        if output is None:
            typer.echo(text, nl=False)
            return
        output.write_text(text, encoding="utf-8")
        output.chmod(0o600)
        rprint(f"[green]✓ Exported:[/green] {output}")

    @app.command()
    def namespaces(ctx: typer.Context) -> None:
        """List namespaces."""
        with _client(ctx) as client:
            result = client.list_namespaces()
        table = Table("Name", "Secrets", "Updated")
        for item in result.namespaces:
            table.add_row(escape(item.name), str(item.secret_count), item.updated_at)
        rprint(table)

    @app.command()
    def health(ctx: typer.Context) -> None:
        """Check service readiness (single attempt, no retries)."""
        with _client(ctx) as client:
            status = client.readyz()
        if status.is_ready:
            rprint(f"[green]✓ Ready:[/green] {escape(status.status)}")
        else:
            rprint(f"[red]✗ Not ready:[/red] {escape(status.status)}")
            raise typer.Exit(code=1)
        for name, check in sorted(status.checks.items()):
            rprint(f"  {escape(name)}: {escape(str(check))}")

    @app.command()
    def stats(ctx: typer.Context) -> None:
        """Show effective client settings and cache counters."""
        with _client(ctx) as client:
            config = client.config
            cache = client.cache_stats()
            rprint(f"Base URL: {escape(config.base_url)}")
            rprint(f"Auth mode: {client.auth_mode.value}")
            rprint(f"Timeout: {config.timeout_seconds:g}s, retries: {config.max_retries}")
            rprint(f"Call deadline: {client.call_deadline_seconds:g}s")
            state = "enabled" if config.cache_enabled else "disabled"
            rprint(
                f"Cache: {state}, ttl {config.cache_ttl_seconds:g}s, "
                f"max {config.cache_max_entries:,} entries"
            )
            rprint(
                f"  hits={cache.hits} misses={cache.misses} evictions={cache.evictions} "
                f"hit_rate={cache.hit_rate:.1%}"
            )

    _ = (
        main,
        get,
        put,
        delete,
        list_keys,
        versions,
        rollback,
        audit,
        export,
        namespaces,
        health,
        stats,
    )

    return app
