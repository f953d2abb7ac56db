"""
CLI interface for UGC Guard.

Provides command-line access to generation, usage and provider health.
"""

import logging
import sys
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ugc_guard.config.loader import AppConfig, default_config, load_config
from ugc_guard.core.errors import (
    EntitlementExceeded,
    GenerationExhausted,
    GenerationPending,
    UgcGuardError,
    ValidationError,
)
from ugc_guard.core.plans import PlanTier
from ugc_guard.core.service import GenerationService
from ugc_guard.providers.base import GenerationRequest
from ugc_guard.storage.models import Subscriber, utcnow
from ugc_guard.storage.repository import initialize_schema
from ugc_guard.storage.subscribers import SqliteSubscriberStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

HEALTH_STYLES = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}


def configure_logging(level: str = "WARNING") -> None:
    """Route library logging through a rich console handler."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj["config"]


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="UGC_GUARD_CONFIG",
        help="Path to a YAML config file (defaults are used when omitted)",
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """UGC Guard CLI."""
    configure_logging(log_level)
    try:
        config = load_config(config_path) if config_path else default_config()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    ctx.obj = {"config": config, "config_path": config_path}
    if ctx.invoked_subcommand is None:
        console.print("UGC Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the UGC Guard database."""
    config = _config(ctx)
    try:
        initialize_schema(config.database_path)
        console.print(f"[green]✓[/] Database initialized at {config.database_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("check-config")
def check_config(ctx: typer.Context):
    """Validate configuration and show providers and plans."""
    config = _config(ctx)
    source = ctx.obj["config_path"] or "built-in defaults"
    console.print(f"[green]✓[/] Configuration valid ({source})")

    providers = Table(title="Providers")
    providers.add_column("Priority", justify="right")
    providers.add_column("ID")
    providers.add_column("Model")
    providers.add_column("Enabled")
    providers.add_column("$ / 1M in", justify="right")
    providers.add_column("$ / 1M out", justify="right")
    for provider in sorted(config.providers, key=lambda p: p.priority):
        providers.add_row(
            str(provider.priority),
            provider.id,
            provider.model,
            "yes" if provider.enabled else "no",
            f"{provider.cost_per_million_input:.2f}",
            f"{provider.cost_per_million_output:.2f}",
        )
    console.print(providers)

    plans = Table(title="Plans")
    plans.add_column("Plan")
    plans.add_column("Daily", justify="right")
    plans.add_column("Monthly", justify="right")
    plans.add_column("Token scale", justify="right")
    plans.add_column("Cost scale", justify="right")
    plans.add_column("Platforms")
    for tier in PlanTier:
        plan = config.get_plan(tier)
        plans.add_row(
            tier.value,
            str(plan.daily_generations),
            str(plan.monthly_generations),
            f"{plan.token_scale:g}",
            f"{plan.cost_scale:g}",
            ", ".join(plan.platforms),
        )
    console.print(plans)
    sys.exit(EXIT_CODE_PASS)


@app.command("add-subscriber")
def add_subscriber(
    ctx: typer.Context,
    subscriber_id: str = typer.Argument(..., help="Subscriber id"),
    plan: str = typer.Option("trial", "--plan", "-p", help="trial, starter, pro or agency"),
    unverified: bool = typer.Option(False, "--unverified", help="Email not verified yet"),
    batch: bool = typer.Option(False, "--batch", help="Grant batch generation"),
):
    """Create or replace a subscriber."""
    config = _config(ctx)
    try:
        tier = PlanTier.parse(plan)
        now = utcnow()
        trial_days = config.get_plan(PlanTier.TRIAL).trial_days
        subscriber = Subscriber(
            id=subscriber_id,
            plan=tier,
            trial_started_at=now if tier == PlanTier.TRIAL else None,
            trial_ends_at=now + timedelta(days=trial_days) if tier == PlanTier.TRIAL else None,
            monthly_reset_date=now,
            has_batch_generation=batch,
            is_email_verified=not unverified,
        )
        initialize_schema(config.database_path)
        SqliteSubscriberStore(config.database_path).add(subscriber)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Subscriber {subscriber_id} added on the {tier.value} plan")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def generate(
    ctx: typer.Context,
    subscriber_id: str = typer.Argument(..., help="Subscriber to charge"),
    product: str = typer.Option(..., "--product", help="Product name"),
    niche: str = typer.Option(..., "--niche", help="Product niche"),
    audience: str = typer.Option(..., "--audience", help="Target audience"),
    platform: Optional[str] = typer.Option(None, "--platform", help="tiktok, instagram, youtube or x"),
    tone: Optional[str] = typer.Option(None, "--tone"),
    length: Optional[str] = typer.Option(None, "--length", help="short, medium or long"),
    variations: int = typer.Option(1, "--variations", "-n", help="Number of variations"),
    queued: bool = typer.Option(False, "--queued", help="Run through the job queue"),
):
    """Generate a UGC script for a subscriber."""
    request = GenerationRequest(
        product_name=product,
        niche=niche,
        target_audience=audience,
        platform=platform,
        tone=tone,
        length=length,
    )
    service = GenerationService.from_config(_config(ctx), use_queue=queued)
    try:
        if variations > 1:
            batch = service.generate_variations(subscriber_id, request, variations)
            artifacts = batch.artifacts
            remaining = batch.remaining_generations
        else:
            result = service.generate(subscriber_id, request)
            artifacts = [result.artifact]
            remaining = result.remaining_generations
    except ValidationError as e:
        for error in e.errors:
            console.print(f"[red]Invalid request:[/] {error}")
        sys.exit(EXIT_CODE_FAIL)
    except EntitlementExceeded as e:
        console.print(f"[yellow]{e.upgrade_message}[/]")
        sys.exit(EXIT_CODE_FAIL)
    except GenerationExhausted as e:
        console.print(f"[red]{e.user_message}[/]")
        sys.exit(EXIT_CODE_FAIL)
    except GenerationPending as e:
        console.print(f"[yellow]{e.message}[/] Job id: {e.job_id}")
        sys.exit(EXIT_CODE_FAIL)
    except UgcGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        service.close()

    for artifact in artifacts:
        _display_artifact(artifact)
    console.print(f"Remaining generations: [bold]{remaining}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(ctx: typer.Context, subscriber_id: str = typer.Argument(..., help="Subscriber id")):
    """Show a subscriber's usage against their plan."""
    service = GenerationService.from_config(_config(ctx), adapters=[])
    try:
        stats = service.get_user_usage_stats(subscriber_id)
    except UgcGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        service.close()

    plan = stats["plan"]
    console.print(f"\n[bold]Plan:[/bold] {plan['tier']} ({plan['limit_type']} limit)")
    console.print(f"Remaining generations: {plan['remaining_generations']}")
    if plan["upgrade_message"]:
        console.print(f"[yellow]{plan['upgrade_message']}[/]")

    table = Table(title="Usage")
    table.add_column("Window")
    table.add_column("Generations", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for window in ("daily", "monthly"):
        data = stats[window]
        table.add_row(
            window,
            f"{data['used']} / {data['limit']}",
            f"{data['tokens_used']:,} / {data['token_budget']:,}",
            f"${data['cost_used']:.6f}",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def health(ctx: typer.Context):
    """Probe providers and show aggregate health."""
    service = GenerationService.from_config(_config(ctx))
    try:
        report = service.get_provider_health()
    finally:
        service.close()

    style = HEALTH_STYLES[report.status]
    console.print(f"\n[bold]Provider health:[/bold] [{style}]{report.status}[/]")
    console.print(f"Uptime: {report.uptime:.0f}%")
    console.print(f"Error rate: {report.error_rate:.0%}")
    console.print(f"Last response time: {report.response_time_ms:.0f}ms")
    console.print(f"Cost per generation: ${report.cost_per_generation:.6f}")
    sys.exit(EXIT_CODE_PASS if report.status != "unhealthy" else EXIT_CODE_FAIL)


@app.command()
def cleanup(ctx: typer.Context):
    """Delete expired daily and monthly usage records."""
    service = GenerationService.from_config(_config(ctx), adapters=[])
    try:
        daily, monthly = service.cleanup()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        service.close()
    console.print(f"[green]✓[/] Removed {daily} daily and {monthly} monthly usage keys")
    sys.exit(EXIT_CODE_PASS)


def _display_artifact(artifact) -> None:
    """Display a generated script."""
    title = f"Variation {artifact.variation + 1}" if artifact.variation is not None else "Script"
    console.print(f"\n[bold]{title}[/bold] [dim]({artifact.provider_id} / {artifact.model})[/]")
    console.print("-" * 40)
    console.print(f"[bold]Hook:[/bold] {escape(artifact.hook)}")
    console.print(f"\n{escape(artifact.script)}")
    if artifact.visuals:
        console.print("\n[bold]Visuals:[/bold]")
        for visual in artifact.visuals:
            console.print(f"  • {escape(visual)}")
    console.print(
        f"\n[dim]{artifact.input_tokens} in / {artifact.output_tokens} out tokens, "
        f"${artifact.estimated_cost:.6f}[/]"
    )


if __name__ == "__main__":
    app()
