"""
keypool CLI
Operator commands for provisioning credentials and inspecting quota.
"""

import asyncio
import json
import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from keypool.config import Settings, get_settings
from keypool.db.repository import CredentialRepository
from keypool.pool import PoolManager

console = Console()


def get_cli_settings(ctx: click.Context) -> Settings:
    """Settings with the group's --database-url override applied."""
    settings = get_settings()
    if ctx.obj.get("database_url"):
        settings = settings.model_copy(update={"database_url": ctx.obj["database_url"]})
    return settings


def get_pool(ctx: click.Context) -> PoolManager:
    """Create a pool manager from the CLI settings."""
    return PoolManager.from_settings(get_cli_settings(ctx))


def run_with_pool(ctx: click.Context, func):
    """Run an async function against a fresh pool and close it afterwards."""

    async def runner():
        pool = get_pool(ctx)
        try:
            return await func(pool)
        finally:
            await pool.close()

    return asyncio.run(runner())


@click.group()
@click.option("--database-url", envvar="DATABASE_URL", help="Override the database URL")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, database_url: Optional[str], verbose: bool):
    """keypool - quota-aware credential pool for rate-limited providers."""
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url

    level = "DEBUG" if verbose else get_settings().log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the database tables."""

    async def _init(pool: PoolManager):
        pool.init_db()

    run_with_pool(ctx, _init)
    console.print("✅ [green]Database initialized[/green]")


@cli.command("add-credential")
@click.argument("tenant_id")
@click.argument("name")
@click.option("--api-key", prompt=True, hide_input=True, help="Provider API key")
@click.option("--priority", "-p", default=1, help="Lower is preferred")
@click.option("--model", "-m", "models", multiple=True, help="Model to attach (repeatable)")
@click.pass_context
def add_credential(ctx, tenant_id: str, name: str, api_key: str, priority: int, models: tuple[str, ...]):
    """Add a credential for a tenant, optionally with models."""

    async def _add(pool: PoolManager):
        with pool.db.get_session() as session:
            repo = CredentialRepository(session, pool.catalog)
            credential = repo.add_credential(tenant_id, name, api_key, priority=priority)
            for index, model_name in enumerate(models, start=1):
                if not pool.catalog.is_supported(model_name):
                    console.print(f"⚠️ [yellow]{model_name} is not in the catalog and will be skipped[/yellow]")
                repo.add_model(credential.id, model_name, priority=index)
            return credential.id

    credential_id = run_with_pool(ctx, _add)
    console.print(f"✅ [green]Added credential {name}[/green] ({credential_id})")


@cli.command()
@click.argument("tenant_id")
@click.argument("model_name")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def quota(ctx, tenant_id: str, model_name: str, as_json: bool):
    """Show aggregated quota for a model across a tenant's credentials."""
    snapshot = run_with_pool(ctx, lambda pool: pool.get_quota_snapshot(tenant_id, model_name))

    if as_json:
        click.echo(json.dumps(snapshot.to_dict(), indent=2))
        return

    if snapshot.total_limit == 0:
        console.print(f"⚠️ [yellow]No models named {model_name} for tenant {tenant_id}[/yellow]")
        sys.exit(1)

    pct = snapshot.percentage_used
    color = "green" if pct < 70 else "yellow" if pct < 95 else "red"
    console.print(
        f"{model_name}: {snapshot.total_used:,}/{snapshot.total_limit:,} "
        f"[{color}]{pct:.1f}%[/{color}] used"
    )

    table = Table(title=f"Available candidates ({len(snapshot.available_candidates)})")
    table.add_column("Credential", style="cyan")
    table.add_column("Priority", justify="right")
    table.add_column("Model ID", style="dim")

    for candidate in snapshot.available_candidates:
        table.add_row(
            candidate.credential_id,
            str(candidate.credential_priority),
            candidate.model_id,
        )

    console.print(table)


@cli.command()
@click.argument("tenant_id")
@click.pass_context
def exclusions(ctx, tenant_id: str):
    """List a tenant's excluded models."""

    async def _list(pool: PoolManager):
        return pool.list_exclusions(tenant_id)

    entries = run_with_pool(ctx, _list)
    if not entries:
        console.print(f"No exclusions for tenant {tenant_id}")
        return

    table = Table(title=f"Exclusions for {tenant_id}")
    table.add_column("ID", style="dim")
    table.add_column("Model", style="cyan")
    table.add_column("Credential")
    table.add_column("Reason", style="yellow")
    table.add_column("Retry at")
    table.add_column("Retries", justify="right")

    for entry in entries:
        table.add_row(
            entry.id,
            entry.model_name,
            entry.credential_id,
            entry.reason,
            entry.retry_at.strftime("%Y-%m-%d %H:%M"),
            str(entry.retry_count),
        )

    console.print(table)


@cli.command()
@click.pass_context
def sweep(ctx):
    """Re-evaluate exclusions whose retry time has passed."""
    stats = run_with_pool(ctx, lambda pool: pool.sweep_exclusions())
    console.print(
        f"Checked {stats['checked']}, removed [green]{stats['removed']}[/green], "
        f"rescheduled [yellow]{stats['rescheduled']}[/yellow]"
    )


@cli.command()
@click.pass_context
def serve(ctx):
    """Run the monitoring API."""
    from keypool.api.app import run

    run(get_cli_settings(ctx))


def main():
    """Entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
