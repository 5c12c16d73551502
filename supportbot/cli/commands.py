"""CLI commands for SupportBot."""

import asyncio
import sys
from datetime import datetime
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from supportbot import __version__, __logo__

app = typer.Typer(
    name="supportbot",
    help=f"{__logo__} SupportBot - support channel autoresponder",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} SupportBot v{__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _format_ts(ts: float | None) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """SupportBot - support channel autoresponder."""
    pass


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard(
    config_path: Path = typer.Option(None, "--config", "-c", help="Config file to create"),
):
    """Create a default SupportBot configuration."""
    from supportbot.config.loader import get_config_path, save_config
    from supportbot.config.schema import Config

    path = config_path or get_config_path()

    if path.exists():
        console.print(f"[yellow]Config already exists at {path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config(), path)
    console.print(f"[green]✓[/green] Created config at {path}")

    console.print(f"\n{__logo__} SupportBot is ready!")
    console.print("\nNext steps:")
    console.print(f"  1. Add your Slack bot and app tokens to [cyan]{path}[/cyan]")
    console.print("  2. Set [cyan]companyEmailDomain[/cyan] and [cyan]supportEmail[/cyan]")
    console.print("  3. Run: [cyan]supportbot run[/cyan]")


# ============================================================================
# Run
# ============================================================================


@app.command()
def run(
    config_path: Path = typer.Option(None, "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Connect to Slack and run the autoresponder."""
    from supportbot.autoresponder import AutoresponderEngine, AutoresponderScheduler
    from supportbot.channels.slack import SlackChannel
    from supportbot.config.loader import load_config
    from supportbot.store import JsonFileStore

    _configure_logging(verbose)
    config = load_config(config_path)

    if not config.slack.bot_token or not config.slack.app_token:
        console.print("[red]Error: Slack tokens are not configured.[/red]")
        console.print("Set slack.botToken and slack.appToken in the config file.")
        raise typer.Exit(1)

    store = JsonFileStore(config.state_file)
    engine = AutoresponderEngine(store, config.autoresponder)
    slack = SlackChannel(config, engine)
    engine.sender = slack.send_autoresponse
    scheduler = AutoresponderScheduler(engine)

    console.print(f"{__logo__} Starting SupportBot...")
    console.print(f"[green]✓[/green] State: {config.state_file}")
    if config.autoresponder.enabled:
        rooms = ", ".join(config.autoresponder.rooms) or "none"
        console.print(f"[green]✓[/green] Autoresponder: rooms {rooms}, every {config.autoresponder.job_interval}s")
    else:
        console.print("[yellow]Autoresponder disabled; messages are queued but never answered[/yellow]")
    if config.welcome.enabled:
        console.print(f"[green]✓[/green] Welcome: rooms {', '.join(config.welcome.rooms)}")

    async def main_loop():
        if config.autoresponder.enabled:
            await scheduler.start()
        try:
            await slack.start()
        finally:
            await slack.stop()
            await scheduler.stop()

    try:
        asyncio.run(main_loop())
    except KeyboardInterrupt:
        console.print("\nShutting down...")
    finally:
        store.close()


# ============================================================================
# Inspection
# ============================================================================


@app.command()
def status(
    config_path: Path = typer.Option(None, "--config", "-c", help="Config file"),
):
    """Show configuration and queued messages."""
    from supportbot.autoresponder import AutoresponderEngine
    from supportbot.config.loader import get_config_path, load_config
    from supportbot.store import JsonFileStore

    path = config_path or get_config_path()
    config = load_config(path)

    console.print(f"{__logo__} SupportBot Status\n")
    console.print(f"Config: {path} {'[green]✓[/green]' if path.exists() else '[red]✗[/red]'}")
    console.print(f"State: {config.state_file} {'[green]✓[/green]' if config.state_file.exists() else '[dim]not created[/dim]'}")
    console.print(f"Slack: {'[green]✓[/green]' if config.slack.bot_token else '[dim]not set[/dim]'}")

    ar = config.autoresponder
    console.print(f"\n[bold]Autoresponder:[/bold] {'[green]enabled[/green]' if ar.enabled else '[dim]disabled[/dim]'}")
    console.print(f"  Rooms: {', '.join(ar.rooms)}")
    console.print(f"  Reply after {ar.timeout}s, agent wait {ar.agent_wait_timeout}s, per-user limit {ar.user_limit_timeout}s")
    hours = ", ".join(f"{day[:3]} {h.start}-{h.end}" for day, h in ar.office_hours.items()) or "none"
    console.print(f"  Office hours ({ar.office_hours_timezone}): {hours}")

    if not config.state_file.exists():
        return

    engine = AutoresponderEngine(JsonFileStore(config.state_file, autosave=False), ar)
    channels = engine.get_channels()
    summary = engine.get_status()

    table = Table(title="Queued Messages")
    table.add_column("Channel", style="cyan")
    table.add_column("Last Agent")
    table.add_column("User")
    table.add_column("Posted")
    table.add_column("Text")

    for channel in channels:
        if channel.is_empty:
            table.add_row(channel.id, _format_ts(channel.last_agent_message_time), "", "", "[dim]empty[/dim]")
        for message in channel.messages:
            text = message.text if len(message.text) <= 50 else message.text[:47] + "..."
            table.add_row(
                channel.id,
                _format_ts(channel.last_agent_message_time),
                message.user_id,
                _format_ts(message.timestamp),
                text,
            )

    console.print()
    console.print(table)
    console.print(f"{summary['queued_total']} message(s) queued in {len(summary['channels'])} channel(s)")


@app.command()
def tick(
    config_path: Path = typer.Option(None, "--config", "-c", help="Config file"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Show decisions without sending"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Run one autoresponder evaluation against the stored queue."""
    from supportbot.autoresponder import AutoresponderEngine
    from supportbot.channels.slack import SlackChannel
    from supportbot.config.loader import load_config
    from supportbot.store import JsonFileStore

    _configure_logging(verbose)
    config = load_config(config_path)
    store = JsonFileStore(config.state_file)
    engine = AutoresponderEngine(store, config.autoresponder)

    if not dry_run:
        if not config.slack.bot_token:
            console.print("[red]Error: Slack bot token is not configured (use --dry-run to preview).[/red]")
            raise typer.Exit(1)
        engine.sender = SlackChannel(config, engine).send_autoresponse

    async def run_once():
        try:
            return await engine.run_tick(dry_run=dry_run)
        finally:
            await engine.close()

    result = asyncio.run(run_once())

    table = Table(title="Dry Run" if dry_run else "Tick")
    table.add_column("Channel", style="cyan")
    table.add_column("User")
    table.add_column("Message")
    table.add_column("Decision")

    colors = {"send": "green", "drop": "red", "defer": "yellow"}
    for message, decision in result.decisions:
        color = colors[decision.value]
        table.add_row(message.channel_id, message.user_id, message.id, f"[{color}]{decision.value}[/{color}]")

    console.print(table)
    console.print(
        f"Sent {result.sent}, dropped {result.dropped}, deferred {result.deferred}"
        f", failed sends {result.failed_sends}, errors {result.errors}"
    )
