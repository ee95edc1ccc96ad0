"""Command line entry point."""

import asyncio
import contextlib
import os
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from picobot import __version__
from picobot.agent import create_runtime
from picobot.bus import MessageBus
from picobot.config import Config, set_config
from picobot.cron import CronScheduler
from picobot.logging import configure_logging, get_logger
from picobot.onboarding import run_onboarding_wizard
from picobot.telegram_bridge import TelegramBridge, TelegramChannel

log = get_logger(__name__)
console = Console()

app = typer.Typer(help="Picobot - a personal AI agent you talk to over Telegram")


def _load_config(config: str, verbose: bool = False) -> Config:
    if verbose:
        os.environ["PICOBOT_LOGGING__LEVEL"] = "DEBUG"
    cfg = Config.from_yaml(Path(config)) if config else Config.load()
    set_config(cfg)
    configure_logging()
    return cfg


async def serve(cfg: Config) -> None:
    """Run the agent runtime, scheduler and Telegram channel until cancelled."""
    Path(cfg.session.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    cfg.resolved_workspace_path().mkdir(parents=True, exist_ok=True)

    runtime = await create_runtime(cfg)
    channel: TelegramChannel | None = None
    if cfg.telegram.enabled:
        if cfg.telegram.token:
            bridge = TelegramBridge(cfg.telegram.token, cfg.telegram.api_base_url)
            channel = TelegramChannel(bridge, runtime.bus, runtime.sessions, cfg.telegram)
        else:
            log.warning("Telegram is enabled but no token is configured")

    workers = [asyncio.create_task(runtime.start(), name="picobot-agent")]
    if runtime.scheduler is not None:
        workers.append(asyncio.create_task(runtime.scheduler.start(), name="picobot-cron"))
    if channel is not None:
        workers.append(asyncio.create_task(channel.start(), name="picobot-telegram"))

    try:
        await asyncio.gather(*workers)
    finally:
        runtime.stop()
        if runtime.scheduler is not None:
            runtime.scheduler.stop()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        if channel is not None:
            await channel.stop()
        await runtime.shutdown()


@app.command()
def start(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start the agent with the Telegram channel and scheduler."""
    cfg = _load_config(config, verbose)
    if model:
        cfg.model.model = model

    try:
        asyncio.run(serve(cfg))
    except KeyboardInterrupt:
        log.info("Shutting down...")
    except Exception as e:
        log.error("Fatal error", error=str(e))
        sys.exit(1)


@app.command()
def status(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Show configuration and stored state."""
    cfg = _load_config(config)

    scheduler = CronScheduler(MessageBus(), cfg.cron.path)
    with contextlib.suppress(OSError):
        scheduler.load()

    table = Table(title=f"Picobot v{__version__}", show_header=False)
    table.add_row("Config", str(Path(config).expanduser() if config else Config.resolve_default_config_path()))
    table.add_row("Provider", cfg.model.provider)
    table.add_row("Model", cfg.model.model)
    table.add_row("API key", "set" if cfg.model.api_key else "[red]missing[/red]")
    table.add_row("Workspace", str(cfg.resolved_workspace_path()))
    table.add_row("Sessions", f"{cfg.session.storage} ({cfg.session.path})")
    table.add_row("Max iterations", str(cfg.agent.max_iterations))
    table.add_row("Subagent types", ", ".join(cfg.subagents.agent_types))
    table.add_row("Cron jobs", str(len(scheduler.list())) if cfg.cron.enabled else "disabled")
    telegram = "disabled"
    if cfg.telegram.enabled:
        telegram = "enabled" if cfg.telegram.token else "[yellow]enabled, no token[/yellow]"
    table.add_row("Telegram", telegram)
    console.print(table)


@app.command()
def onboard(
    config: str = typer.Option("", "-c", "--config", help="Where to write the config file"),
) -> None:
    """Interactive setup wizard."""
    try:
        run_onboarding_wizard(config or None, console=console)
    except RuntimeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"Picobot v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
