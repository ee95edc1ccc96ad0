"""Interactive first-run setup that writes ``config.yaml``."""

from __future__ import annotations

import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from picobot.config import DEFAULT_CONFIG_PATH, OPENROUTER_BASE_URL, Config

_PROVIDER_DEFAULT_MODELS = {
    "openrouter": "x-ai/grok-4.1-fast",
    "openai": "gpt-5-mini",
    "ollama": "llama3.2",
}

_PROVIDER_DEFAULT_BASE_URLS = {
    "openrouter": OPENROUTER_BASE_URL,
    "openai": "https://api.openai.com/v1",
    "ollama": "http://127.0.0.1:11434/v1",
}


def can_run_onboarding_interactively() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


def _select_provider(console: Console, current_provider: str) -> str:
    table = Table(title="LLM provider", show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Provider")
    providers = list(_PROVIDER_DEFAULT_MODELS)
    for idx, name in enumerate(providers, start=1):
        table.add_row(str(idx), name)
    console.print(table)

    default = str(providers.index(current_provider) + 1) if current_provider in providers else "1"
    choice = Prompt.ask("Select provider", choices=[str(i) for i in range(1, len(providers) + 1)], default=default)
    return providers[int(choice) - 1]


def run_onboarding_wizard(config_path: Path | str | None = None, console: Console | None = None) -> Path | None:
    """Ask for the essentials and save them. Returns the written path, or ``None`` if skipped."""
    console = console or Console()
    if not can_run_onboarding_interactively():
        raise RuntimeError("Onboarding wizard requires an interactive terminal.")

    console.print(
        Panel(
            "[bold cyan]Picobot Onboarding[/bold cyan]\n"
            "This wizard configures your model provider, workspace and Telegram bot.",
            border_style="cyan",
        )
    )

    target = Path(config_path).expanduser() if config_path else DEFAULT_CONFIG_PATH
    cfg = Config.from_yaml(target)

    provider = _select_provider(console, cfg.model.provider)
    default_model = cfg.model.model if cfg.model.provider == provider else _PROVIDER_DEFAULT_MODELS[provider]
    model_name = Prompt.ask("Default model", default=default_model).strip() or default_model

    api_key = cfg.model.api_key
    if provider != "ollama":
        api_key = Prompt.ask("API key (leave empty to use PICOBOT_MODEL__API_KEY)", default=api_key, password=True).strip()
    base_url = Prompt.ask("Base URL", default=cfg.model.base_url or _PROVIDER_DEFAULT_BASE_URLS[provider]).strip()

    workspace_path = Prompt.ask("Workspace path", default=cfg.workspace.path).strip() or cfg.workspace.path

    telegram_token = cfg.telegram.token
    allowed_users = list(cfg.telegram.allowed_users)
    telegram_enabled = Confirm.ask("Enable Telegram bot?", default=cfg.telegram.enabled)
    if telegram_enabled:
        telegram_token = Prompt.ask("Telegram bot token", default=telegram_token, password=True).strip()
        users = Prompt.ask(
            "Allowed Telegram users (ids or usernames, comma separated, empty for anyone)",
            default=",".join(allowed_users),
        )
        allowed_users = [user.strip() for user in users.split(",") if user.strip()]

    summary = Table(title="Summary", show_header=False)
    summary.add_row("Config file", str(target))
    summary.add_row("Provider", provider)
    summary.add_row("Model", model_name)
    summary.add_row("API key stored", "yes" if api_key else "no (env var recommended)")
    summary.add_row("Workspace", workspace_path)
    summary.add_row("Telegram", "enabled" if telegram_enabled else "disabled")
    console.print(summary)

    if not Confirm.ask("Save configuration?", default=True):
        console.print("[yellow]Onboarding skipped. No changes were saved.[/yellow]")
        return None

    cfg.model.provider = provider
    cfg.model.model = model_name
    cfg.model.api_key = api_key
    cfg.model.base_url = base_url
    cfg.workspace.path = workspace_path
    cfg.telegram.enabled = telegram_enabled
    cfg.telegram.token = telegram_token
    cfg.telegram.allowed_users = allowed_users

    saved = cfg.save(target)
    Path(cfg.workspace.path).expanduser().mkdir(parents=True, exist_ok=True)
    console.print(
        Panel(
            f"[bold green]Setup complete.[/bold green]\nConfiguration saved to [cyan]{saved}[/cyan]",
            border_style="green",
        )
    )
    return saved
