"""CLI commands for telecode."""

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from telecode import __logo__, __version__

app = typer.Typer(
    name="telecode",
    help=f"{__logo__} telecode - Telegram bridge for OpenCode",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} telecode v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-V", callback=version_callback, is_eager=True
    ),
):
    """telecode - Telegram bridge for OpenCode."""
    pass


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


@app.command()
def version():
    """Show the telecode version."""
    console.print(f"{__logo__} telecode v{__version__}")


@app.command()
def init(
    config_path: Path = typer.Option(None, "--config", "-c", help="Config file path"),
    bot_token: str = typer.Option(..., "--bot-token", prompt="Telegram bot token", hide_input=True),
    allowed_user_id: int = typer.Option(..., "--allowed-user-id", prompt="Allowed Telegram user id"),
    server_url: str = typer.Option(
        "http://127.0.0.1:4096", "--server-url", prompt="OpenCode server URL"
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
):
    """Write a config file with the settings needed to run."""
    from telecode.config.loader import get_config_path, save_config
    from telecode.config.schema import Config, OpenCodeConfig, TelegramConfig

    path = config_path or get_config_path()
    if path.exists() and not force:
        console.print(f"[red]Error:[/red] {path} already exists (use --force to overwrite)")
        raise typer.Exit(1)

    cfg = Config(
        telegram=TelegramConfig(bot_token=bot_token, allowed_user_id=allowed_user_id),
        opencode=OpenCodeConfig(server_url=server_url),
    )
    saved = save_config(cfg, path)
    console.print(f"[green]✓[/green] Created config at {saved}")


@app.command()
def config(
    config_path: Path = typer.Option(None, "--config", "-c", help="Config file path"),
):
    """Show the effective configuration."""
    from telecode.config.loader import get_config_path, load_config

    path = config_path or get_config_path()
    cfg = load_config(path)

    table = Table(title=f"telecode config ({path})")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("telegram.botToken", "set" if cfg.telegram.bot_token else "[red]missing[/red]")
    table.add_row("telegram.allowedUserId", str(cfg.telegram.allowed_user_id or "[red]missing[/red]"))
    table.add_row("telegram.downloadTimeoutS", str(cfg.telegram.download_timeout_s))
    table.add_row("telegram.maxFileBytes", str(cfg.telegram.max_file_bytes))
    table.add_row("opencode.serverUrl", cfg.opencode.server_url or "[red]missing[/red]")
    table.add_row("opencode.serverUsername", cfg.opencode.server_username)
    table.add_row("opencode.serverPassword", "set" if cfg.opencode.server_password else "-")
    table.add_row("bridge.promptTimeoutS", str(cfg.bridge.prompt_timeout_s))
    table.add_row("bridge.eventRetryDelayS", str(cfg.bridge.event_retry_delay_s))
    table.add_row("dataDir", str(cfg.data_path))
    console.print(table)


@app.command()
def run(
    config_path: Path = typer.Option(None, "--config", "-c", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Start the Telegram bot and the OpenCode event bridge."""
    from telecode.backend.opencode import OpenCodeBackend
    from telecode.bridge.guard import PromptGuard
    from telecode.bridge.interactions import PermissionRegistry, QuestionRegistry
    from telecode.bridge.multiplexer import EventMultiplexer
    from telecode.bridge.orchestrator import PromptOrchestrator
    from telecode.channels.telegram import TelegramChannel
    from telecode.config.loader import load_config
    from telecode.errors import ConfigError
    from telecode.session.ownership import SessionStore
    from telecode.session.projects import ChatModelStore, ChatProjectStore, ProjectStore
    from telecode.utils.helpers import ensure_dir

    _configure_logging(verbose)

    cfg = load_config(config_path)
    try:
        cfg.validate_runtime()
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    data_dir = ensure_dir(cfg.data_path)
    console.print(f"{__logo__} Starting telecode against {cfg.opencode.server_url}...")

    backend = OpenCodeBackend(cfg.opencode)
    ownership = SessionStore(data_dir / "sessions.json")
    projects = ProjectStore(data_dir / "projects.json")
    chat_projects = ChatProjectStore(data_dir / "chat_projects.json")
    chat_models = ChatModelStore(data_dir / "chat_models.json")
    questions = QuestionRegistry(backend)
    permissions = PermissionRegistry(backend)
    channel = TelegramChannel(cfg.telegram, message_limit=cfg.bridge.message_limit)

    async def _run() -> None:
        orchestrator = PromptOrchestrator(
            backend=backend,
            transport=channel,
            guard=PromptGuard(cfg.bridge.prompt_timeout_s),
            ownership=ownership,
            projects=projects,
            chat_projects=chat_projects,
            chat_models=chat_models,
            questions=questions,
            permissions=permissions,
            config=cfg,
        )
        channel.set_handler(orchestrator)
        multiplexer = EventMultiplexer(
            backend,
            ownership,
            questions,
            permissions,
            channel,
            retry_delay_s=cfg.bridge.event_retry_delay_s,
        )
        multiplexer.start()
        try:
            await channel.start()
        finally:
            console.print("\nShutting down...")
            await multiplexer.stop()
            await orchestrator.shutdown()
            await channel.stop()
            await backend.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    app()
