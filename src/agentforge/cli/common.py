"""Shared helpers for CLI commands."""

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape

from agentforge.config.loader import ConfigError, load_config
from agentforge.config.schema import ForgeConfig

console = Console()


def load_cli_config(config_path: str | None = None, verbose: bool = False) -> ForgeConfig:
    """Load configuration and set up logging, exiting on config errors."""
    try:
        config = load_config(Path(config_path) if config_path else None)
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from e

    logging.basicConfig(
        level="DEBUG" if verbose else config.logging.level,
        format=config.logging.format,
    )
    return config
