"""
Rich CLI interface for Routewise.

Inspect tiers and the policy table, validate policy files, list evaluation
datasets, dry-run routing decisions and start the API server.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from routewise import __version__
from routewise.core.config import get_settings
from routewise.core.errors import (
    DatasetLoadError,
    InvalidPolicyTableError,
    NoEligibleProviderError,
    QuotaExceededError,
)
from routewise.core.models import PrivacyLevel, RequestContext
from routewise.policy.models import parse_table
from routewise.quota.store import InMemoryQuotaStore
from routewise.quota.tiers import TierTable
from routewise.service import RoutingService

app = typer.Typer(
    name="routewise",
    help="Policy-driven model routing with daily tier quotas",
    no_args_is_help=True,
)
policy_app = typer.Typer(help="Inspect and validate policy tables", no_args_is_help=True)
app.add_typer(policy_app, name="policy")
console = Console()


def _read_structured(path: Path) -> dict:
    with open(path, encoding="utf-8") as f:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(f) or {}
        return json.load(f)


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold cyan]Routewise[/bold cyan] v{__version__}")


@app.command()
def tiers():
    """List tiers and their daily limits."""
    settings = get_settings()
    table_ = TierTable.from_settings(settings.quota.tiers, default_tier=settings.router.default_tier)

    table = Table(title="Tier Limits", show_header=True, header_style="bold magenta")
    table.add_column("Tier", style="cyan")
    table.add_column("Level 1 req/day", justify="right")
    table.add_column("Level 2 req/day", justify="right")
    table.add_column("Tokens/day", justify="right")
    table.add_column("Cost/day", justify="right")
    table.add_column("Cost/month", justify="right")

    for tier in table_:
        name = f"{tier.name} [dim](default)[/dim]" if tier.name == table_.default_tier else tier.name
        table.add_row(
            name,
            f"{tier.level1_requests:,}",
            f"{tier.level2_requests:,}",
            f"{tier.total_tokens:,}",
            f"${tier.daily_max_cost:.2f}",
            f"${tier.monthly_max_cost:.2f}",
        )

    console.print(table)
    console.print(f"\n[dim]Daily reset at {settings.quota.reset_time} UTC[/dim]")


@policy_app.command("show")
def policy_show(
    raw: bool = typer.Option(False, "--json", help="Print the table as JSON"),
):
    """Show the active policy table."""
    service = RoutingService(quota_store=InMemoryQuotaStore())
    snapshot = service.policy_store.load()

    if raw:
        console.print(Syntax(json.dumps(snapshot.table.to_dict(), indent=2), "json"))
        return

    table = Table(
        title=f"Policy Table v{snapshot.table.version} ({snapshot.source})",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Priority", justify="right")
    table.add_column("Rule", style="cyan")
    table.add_column("Class", style="yellow")
    table.add_column("Preferred", style="green")
    table.add_column("Fallback")
    table.add_column("Strategy", style="blue")
    table.add_column("Enabled")

    for rule in snapshot.ordered_rules:
        strategy = rule.actions.routing_strategy
        table.add_row(
            str(rule.priority),
            rule.id,
            rule.rule_class.value,
            ", ".join(rule.actions.preferred_providers) or "-",
            ", ".join(rule.actions.fallback_providers) or "-",
            strategy.value if strategy else "-",
            "[green]yes[/green]" if rule.enabled else "[red]no[/red]",
        )

    console.print(table)


@policy_app.command("validate")
def policy_validate(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Policy table file (JSON or YAML)"),
):
    """Validate a policy table file without applying it."""
    try:
        table = parse_table(_read_structured(path))
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Could not read {path}: {e}[/red]")
        raise typer.Exit(1)
    except InvalidPolicyTableError as e:
        console.print(f"[red]Invalid policy table:[/red] {e}")
        for error in e.errors:
            console.print(f"  [red]-[/red] {error}")
        raise typer.Exit(1)

    console.print(
        f"[green]Valid[/green] policy table v{table.version} with {len(table.rules)} rules"
    )


@app.command()
def datasets():
    """List evaluation datasets."""
    settings = get_settings()
    if not settings.evaluation.datasets_path:
        console.print("[yellow]No datasets path configured (ROUTEWISE_EVAL_DATASETS_PATH)[/yellow]")
        raise typer.Exit(1)

    service = RoutingService(quota_store=InMemoryQuotaStore())
    store = service.evaluations.datasets

    table = Table(title="Evaluation Datasets", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Samples", justify="right")
    table.add_column("Categories")

    for dataset_id in store.list_datasets():
        try:
            dataset = store.load(dataset_id)
        except DatasetLoadError as e:
            table.add_row(dataset_id, f"[red]{e}[/red]", "-", "-")
            continue
        table.add_row(
            dataset.id,
            dataset.name,
            str(len(dataset.samples)),
            ", ".join(dataset.categories),
        )

    console.print(table)

    latest = service.evaluations.latest_accuracy()
    if latest:
        console.print("\n[bold]Measured accuracy:[/bold]")
        for identifier, accuracy in sorted(latest.items()):
            console.print(f"  {identifier}: {accuracy:.1f}%")


@app.command()
def route(
    request_type: str = typer.Argument(..., help="Request type, e.g. general_chat"),
    user_id: str = typer.Option("cli-user", "--user", "-u", help="User id"),
    tier: Optional[str] = typer.Option(None, "--tier", "-t", help="Tier the dry-run user belongs to"),
    region: Optional[str] = typer.Option(None, "--region", help="Request region"),
    emergency: bool = typer.Option(False, "--emergency", help="Flag as emergency"),
    sensitive: bool = typer.Option(False, "--sensitive", help="Request contains sensitive data"),
    privacy: Optional[PrivacyLevel] = typer.Option(None, "--privacy", help="Privacy level"),
    accuracy: Optional[float] = typer.Option(None, "--accuracy", help="Required accuracy (0-100)"),
    tokens: Optional[int] = typer.Option(None, "--tokens", help="Estimated tokens"),
):
    """Dry-run a routing decision against an in-memory ledger."""
    service = RoutingService(
        quota_store=InMemoryQuotaStore(),
        tier_lookup=(lambda _: tier) if tier else None,
    )
    context = RequestContext(
        user_id=user_id,
        request_type=request_type,
        region=region,
        emergency=emergency,
        contains_sensitive_data=sensitive,
        privacy_level=privacy,
        required_accuracy=accuracy,
        estimated_tokens=tokens,
    )

    async def run():
        await service.start(run_scheduler=False)
        try:
            return await service.route(context)
        finally:
            await service.stop()

    try:
        decision = asyncio.run(run())
    except QuotaExceededError as e:
        console.print(f"[red]Rejected:[/red] {e.reason}")
        raise typer.Exit(1)
    except NoEligibleProviderError as e:
        console.print(f"[red]No eligible provider:[/red] {e}")
        raise typer.Exit(1)

    console.print(Panel(
        f"Provider: [cyan]{decision.provider}[/cyan]\n"
        f"Model: [cyan]{decision.model}[/cyan]\n"
        f"Level: {decision.task_level.value}\n"
        f"Strategy: {decision.routing_strategy.value}\n"
        f"Reason: {decision.routing_reason.value}\n"
        f"Fallbacks: {', '.join(decision.fallback_chain) or '-'}\n"
        f"Rules: {', '.join(decision.applied_rules) or '-'}\n"
        f"Estimated cost: ${decision.estimated_cost:.6f}",
        title="Routing Decision",
    ))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload"),
):
    """Start the API server."""
    from routewise.api.server import run_server

    settings = get_settings()
    host = host or settings.server.host
    port = port or settings.server.port

    console.print(Panel(
        f"Starting Routewise API server\n"
        f"Host: [cyan]{host}[/cyan]\n"
        f"Port: [cyan]{port}[/cyan]\n"
        f"Docs: [link]http://{host}:{port}/docs[/link]",
        title="Routewise Server",
    ))

    run_server(
        host=host,
        port=port,
        reload=reload or settings.server.reload,
        workers=settings.server.workers,
    )


@app.command()
def config():
    """Show current configuration."""
    settings = get_settings()

    table = Table(title="Routewise Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Environment", settings.environment)
    table.add_row("Debug", str(settings.debug))
    table.add_row("Log Level", settings.router.log_level)
    table.add_row("Default Tier", settings.router.default_tier)
    table.add_row("Accuracy Threshold", f"{settings.router.accuracy_threshold_percent}%")
    table.add_row("Merge Strategy", settings.router.merge_strategy)
    table.add_row("Limit Resolution", settings.router.limit_resolution)
    table.add_row("Quota Reset", f"{settings.quota.reset_time} UTC")
    table.add_row("Policy Table", settings.policy.table_path or "(in memory)")
    table.add_row("Policy Reload", f"{settings.policy.reload_interval_seconds}s")
    table.add_row("Redis", "configured" if settings.redis.is_configured else "not configured")
    table.add_row("Server", f"{settings.server.host}:{settings.server.port}")

    console.print(table)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
