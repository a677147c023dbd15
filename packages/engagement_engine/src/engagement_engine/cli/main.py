"""
Engagement CLI

Command-line interface for Engagement Engine administration.

Commands:
- init-db: Create engagement tables
- render-preview: Render a named template
- trigger: Fire an automation now (optionally in diagnostic mode)
- run-drawing: Run this month's drawing for a tier
- dispatch-campaign: Send a draft campaign
- reconcile: Pull provider statistics into delivery logs
- list-drawings: Show recent drawings
- drawing-stats: Show drawing totals per tier
- replay-dlq: Move dead-lettered delivery events back to the stream
"""

import asyncio
import json
from typing import Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="engagement-cli",
    help="Engagement Engine CLI",
)

console = Console()


def get_engine():
    """Build the engine facade from settings."""
    from basecore.logging import setup_logging
    from engagement_engine.service.engine import EngagementEngine

    setup_logging()
    return EngagementEngine()


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        rprint(f"[red]Invalid {label}: {value}[/red]")
        raise typer.Exit(1)


def parse_json_option(value: Optional[str], label: str) -> dict:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        rprint(f"[red]Invalid JSON for {label}: {e}[/red]")
        raise typer.Exit(1)
    if not isinstance(data, dict):
        rprint(f"[red]{label} must be a JSON object[/red]")
        raise typer.Exit(1)
    return data


def run_and_close(engine, coro):
    async def runner():
        try:
            return await coro
        finally:
            await engine.close()

    return asyncio.run(runner())


def print_errors(summary: dict) -> None:
    for error in summary.get("errors") or []:
        rprint(f"  [red]Error: {error}[/red]")


@app.command()
def init_db():
    """
    Create engagement tables that do not exist yet.
    """
    from engagement_engine.persistence import init_db as _init_db

    _init_db()
    rprint("[green]Engagement tables ready[/green]")


@app.command()
def render_preview(
    template_name: str = typer.Argument(..., help="Registry template name"),
    variables: Optional[str] = typer.Option(None, help="Template variables as a JSON object"),
    html: bool = typer.Option(False, "--html", help="Print the HTML body instead of the text"),
):
    """
    Render a named template without sending it.
    """
    from engagement_engine.templates import template_registry
    from engagement_engine.errors import TemplateNotFoundError

    scope = parse_json_option(variables, "variables")
    try:
        rendered = template_registry.render(template_name, scope)
    except TemplateNotFoundError as e:
        rprint(f"[red]{e.message}[/red]")
        rprint(f"  Available: {', '.join(e.details.get('available', []))}")
        raise typer.Exit(1)

    rprint(f"[cyan]Subject:[/cyan] {rendered.subject}\n")
    console.print(rendered.html if html else rendered.text, markup=False, highlight=False)


@app.command()
def trigger(
    automation_id: str = typer.Argument(..., help="Automation UUID"),
    context: Optional[str] = typer.Option(None, help="Firing context as a JSON object"),
    diagnostic: bool = typer.Option(False, "--diagnostic", "-d", help="Send without touching counters"),
):
    """
    Fire an automation now.

    Diagnostic firings send real messages but leave campaign and
    automation counters alone.
    """
    automation_uuid = parse_uuid(automation_id, "automation ID")
    firing_context = parse_json_option(context, "context")

    engine = get_engine()
    summary = run_and_close(
        engine,
        engine.trigger_automation(automation_uuid, firing_context or None, diagnostic=diagnostic),
    )

    status = summary.get("status", "failed")
    color = "green" if summary.get("success") else "red"
    rprint(f"[{color}]Automation {automation_id}: {status}[/{color}]")
    if summary.get("reason"):
        rprint(f"  Reason: {summary['reason']}")
    dispatch = summary.get("dispatch")
    if dispatch:
        rprint(f"  Attempted: {dispatch['attempted']}  Sent: {dispatch['sent']}  Failed: {dispatch['failed']}")
    drawing = summary.get("drawing")
    if drawing:
        rprint(f"  Drawing: {drawing['status']} ({drawing['participants_count']} participants)")
    print_errors(summary)
    if not summary.get("success"):
        raise typer.Exit(1)


@app.command()
def run_drawing(
    tier: str = typer.Argument(..., help="Subscription tier (lite, pro, champ)"),
):
    """
    Run (or resume) this month's drawing for a tier.

    Safe to repeat: a completed drawing is left as is, and a failed
    disbursement is retried for the same winner.
    """
    from engagement_engine.contracts.event_types import Tier

    try:
        tier_value = Tier(tier)
    except ValueError:
        rprint(f"[red]Unknown tier: {tier}[/red]")
        raise typer.Exit(1)

    engine = get_engine()
    summary = run_and_close(engine, engine.run_drawing(tier_value))

    color = "green" if summary.get("success") else "red"
    rprint(f"[{color}]Drawing {tier_value.value} {summary.get('year')}-{summary.get('month', 0):02d}: "
           f"{summary.get('status', 'failed')}[/{color}]")
    winner = summary.get("winner")
    if winner:
        rprint(f"  Winner: {winner.get('name')} <{winner.get('email')}>")
        rprint(f"  Prize: ${summary.get('prize_amount', 0):g}")
        rprint(f"  Participants: {summary.get('participants_count', 0)}")
    print_errors(summary)
    if not summary.get("success"):
        raise typer.Exit(1)


@app.command()
def dispatch_campaign(
    campaign_id: str = typer.Argument(..., help="Campaign UUID"),
):
    """
    Send a draft campaign to its target audience.
    """
    campaign_uuid = parse_uuid(campaign_id, "campaign ID")

    engine = get_engine()
    summary = run_and_close(engine, engine.dispatch_campaign(campaign_uuid))

    if not summary.get("success"):
        rprint(f"[red]Campaign {campaign_id} was not sent[/red]")
        print_errors(summary)
        raise typer.Exit(1)

    rprint(f"[green]Campaign {campaign_id}: {summary.get('campaign_status')}[/green]")
    rprint(f"  Attempted: {summary['attempted']}  Sent: {summary['sent']}  Failed: {summary['failed']}")


@app.command()
def reconcile():
    """
    Pull provider message statistics and correct delivery logs.
    """
    engine = get_engine()
    summary = run_and_close(engine, engine.reconcile())

    color = "green" if summary.get("success") else "yellow"
    rprint(f"[{color}]Reconciliation finished[/{color}]")
    rprint(f"  Total: {summary.get('total', 0)}")
    rprint(f"  Synced: {summary.get('synced', 0)}")
    rprint(f"  Not found: {summary.get('not_found', 0)}")
    rprint(f"  Errors: {summary.get('errors', 0)}")
    if summary.get("error"):
        rprint(f"  [red]{summary['error']}[/red]")


@app.command()
def list_drawings(
    tier: Optional[str] = typer.Option(None, help="Filter by tier"),
    limit: int = typer.Option(12, help="Maximum number of drawings to show"),
):
    """
    List recent monthly drawings.
    """
    engine = get_engine()
    drawings = engine.drawing_history(tier, limit=limit)

    if not drawings:
        rprint("[yellow]No drawings found[/yellow]")
        raise typer.Exit(0)

    table = Table(title="Monthly Drawings")
    table.add_column("Period")
    table.add_column("Tier")
    table.add_column("Prize")
    table.add_column("Participants")
    table.add_column("Winner")
    table.add_column("Completed")
    table.add_column("Last Error", style="dim")

    for d in drawings:
        table.add_row(
            d["period"],
            d["tier"],
            f"${d['prize_amount']:g}",
            str(d["participants"]),
            d["winner"] or "-",
            "Yes" if d["is_completed"] else f"No ({d['attempts']} attempts)",
            d["last_error"] or "-",
        )

    console.print(table)


@app.command()
def drawing_stats():
    """
    Show drawing totals per tier.
    """
    engine = get_engine()
    stats = engine.drawing_stats()

    table = Table(title="Drawing Statistics")
    table.add_column("Tier")
    table.add_column("Drawings")
    table.add_column("Completed")
    table.add_column("Prize Money")
    table.add_column("Avg Participants")

    for tier, row in stats.items():
        table.add_row(
            tier,
            str(row["total_drawings"]),
            str(row["completed_drawings"]),
            f"${row['total_prize_money']:g}",
            f"{row['average_participants']:.1f}",
        )

    console.print(table)


@app.command()
def replay_dlq(
    limit: int = typer.Option(10, help="Maximum messages to replay"),
):
    """
    Replay delivery events from the dead letter queue.
    """
    from basecore.redis import get_redis_client
    from engagement_engine.contracts.envelope import DeliveryEnvelope
    from engagement_engine.streams.groups import DELIVERY_DLQ_STREAM, DELIVERY_EVENTS_STREAM

    redis_client = get_redis_client()
    messages = redis_client.xrange(DELIVERY_DLQ_STREAM, count=limit)

    if not messages:
        rprint("[yellow]No messages in DLQ[/yellow]")
        raise typer.Exit(0)

    replayed = 0
    for msg_id, data in messages:
        try:
            envelope = DeliveryEnvelope.from_stream_message(msg_id, data)
        except (KeyError, ValueError) as e:
            rprint(f"[yellow]Skipping {msg_id}: {e}[/yellow]")
            continue
        envelope.metadata = {}
        redis_client.xadd(DELIVERY_EVENTS_STREAM, envelope.to_stream_data())
        redis_client.xdel(DELIVERY_DLQ_STREAM, msg_id)
        replayed += 1

    rprint(f"[green]Replayed {replayed} messages[/green]")


if __name__ == "__main__":
    app()
