"""campaign-dispatch CLI."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .compliance.models import InboundMessage
from .config import configure_logging, get_settings
from .errors import DispatchEngineError
from .runtime import Runtime, build_runtime
from .webhooks.parsers import parse_resend_event, parse_telnyx_event

app = typer.Typer(
    name="campaign-dispatch",
    help="Automation and campaign dispatch engine for email and SMS.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold cyan]campaign-dispatch[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
):
    """Send campaigns, run automations and reconcile delivery callbacks."""
    settings = get_settings()
    configure_logging(
        level=settings.log_level,
        format=settings.log_format,
        sanitize_logs=settings.sanitize_logs,
    )


def _runtime() -> Runtime:
    try:
        return build_runtime(get_settings())
    except DispatchEngineError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)


def _fail(e: DispatchEngineError) -> None:
    console.print(f"[red]{e.code}:[/red] {e.message}")
    raise typer.Exit(1)


@app.command("init-db")
def init_db():
    """Create the database schema."""
    runtime = _runtime()
    console.print(f"[green]Schema ready[/green] at {runtime.settings.database_url}")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    no_scheduler: bool = typer.Option(False, "--no-scheduler", help="Do not run the tick loop"),
):
    """Run the HTTP API (and the scheduler, unless disabled)."""
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(start_scheduler=not no_scheduler), host=host, port=port)


@app.command("scheduler")
def run_scheduler():
    """Run the scheduler tick loop in the foreground."""
    runtime = _runtime()

    async def _run() -> None:
        runtime.scheduler.start()
        console.print(
            f"Scheduler running every {runtime.settings.scheduler_interval_seconds}s "
            "(Ctrl+C to stop)"
        )
        try:
            await asyncio.Event().wait()
        finally:
            await runtime.aclose()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("[yellow]Scheduler stopped[/yellow]")


@app.command("tick")
def tick(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Run one scheduler tick."""
    runtime = _runtime()
    result = asyncio.run(runtime.scheduler.tick())
    if json_output:
        print(result.model_dump_json(indent=2))
    else:
        console.print(
            Panel(
                f"Runs advanced: [bold]{result.runs_advanced}[/bold]\n"
                f"Campaigns started: [bold]{result.campaigns_started}[/bold]\n"
                f"Units processed: [bold]{result.units_processed}[/bold]\n"
                f"Campaigns finished: [bold]{result.campaigns_finalized}[/bold]",
                title="Tick",
                border_style="blue",
            )
        )
    if result.errors:
        for error in result.errors:
            console.print(f"[red]Error:[/red] {error}")
        raise typer.Exit(1)


@app.command("send-campaign")
def send_campaign(campaign_id: str = typer.Argument(..., help="Campaign ID")):
    """Execute a draft or scheduled campaign now."""
    runtime = _runtime()
    try:
        result = asyncio.run(runtime.campaigns.execute(campaign_id))
    except DispatchEngineError as e:
        _fail(e)

    table = Table(title=f"Campaign {campaign_id}")
    table.add_column("Outcome", style="cyan")
    table.add_column("Recipients", justify="right")
    for outcome, count in result.outcomes.items():
        table.add_row(outcome, str(count))
    console.print(table)
    console.print(
        f"Status: [bold]{result.status.value}[/bold]  "
        f"Recipients: {result.recipient_count}"
    )


@app.command("campaign-status")
def campaign_status(
    campaign_id: str = typer.Argument(..., help="Campaign ID"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Show a campaign's counters and rates."""
    runtime = _runtime()
    try:
        analytics = runtime.campaigns.get_analytics(campaign_id)
    except DispatchEngineError as e:
        _fail(e)

    if json_output:
        print(analytics.model_dump_json(indent=2))
        return
    lines = [f"{key}: [bold]{value}[/bold]" for key, value in analytics.model_dump().items()]
    console.print(
        Panel(
            "\n".join(lines),
            title=f"Campaign {campaign_id}",
            border_style="blue",
        )
    )


@app.command("store-performance")
def store_performance(
    store_id: str = typer.Argument(..., help="Store ID"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Show campaign totals and rates per channel for a store."""
    runtime = _runtime()
    summary = runtime.campaigns.get_performance_summary(store_id)
    if json_output:
        print(summary.model_dump_json(indent=2))
        return

    table = Table(title=f"Campaign performance for {store_id}")
    table.add_column("Channel", style="cyan")
    for column in ("Campaigns", "Sent", "Delivered", "Delivery", "Open", "Click"):
        table.add_column(column, justify="right")
    for totals in (summary.email, summary.sms):
        table.add_row(
            totals.channel.value,
            str(totals.campaign_count),
            str(totals.sent_count),
            str(totals.delivered_count),
            f"{totals.delivery_rate:.1%}",
            f"{totals.open_rate:.1%}",
            f"{totals.click_rate:.1%}",
        )
    console.print(table)


@app.command("load-workflow")
def load_workflow(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Workflow YAML file"),
    activate: bool = typer.Option(False, "--activate", help="Activate after saving"),
):
    """Validate and save a workflow definition from YAML."""
    runtime = _runtime()
    data = yaml.safe_load(path.read_text())
    try:
        workflow = runtime.automation.save_workflow(data)
        if activate:
            runtime.automation.set_workflow_active(workflow.id, True)
    except DispatchEngineError as e:
        console.print(f"[red]{e.code}:[/red] {e.message}")
        for error in e.details.get("errors", []):
            console.print(f"  - {error}")
        raise typer.Exit(1)
    state = "active" if activate else "inactive"
    console.print(
        f"[green]Saved[/green] workflow {workflow.id} "
        f"({workflow.trigger_type.value}, {len(workflow.actions)} actions, {state})"
    )


@app.command("reconcile")
def reconcile(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Webhook body as JSON"),
    provider: str = typer.Option(..., "--provider", help="resend or telnyx"),
):
    """Apply a saved provider webhook body, e.g. when replaying missed callbacks."""
    runtime = _runtime()
    body = json.loads(path.read_text())
    try:
        if provider == "resend":
            parsed = parse_resend_event(body)
        elif provider == "telnyx":
            parsed = parse_telnyx_event(body)
        else:
            console.print(f"[red]Unknown provider:[/red] {provider}")
            raise typer.Exit(1)

        if isinstance(parsed, InboundMessage):
            opted_out = runtime.reconciler.handle_inbound(parsed)
            result = f"inbound ({len(opted_out)} opted out)"
        else:
            result = runtime.reconciler.apply_provider_event(parsed).value
    except DispatchEngineError as e:
        _fail(e)
    console.print(f"Result: [bold]{result}[/bold]")


if __name__ == "__main__":
    app()
