"""CLI commands for inspecting the registry."""

from __future__ import annotations

import json

import typer
from rich.table import Table

from agentforge.cli.common import console, load_cli_config
from agentforge.registry.store import Registry


def _open(config_path: str | None) -> Registry:
    config = load_cli_config(config_path)
    return Registry(config.registry.db_path, credential_key=config.registry.credential_key)


def list_agents(config_path: str | None = None) -> None:
    """List registered agents."""
    registry = _open(config_path)
    try:
        records = registry.list_agents()
    finally:
        registry.close()

    if not records:
        console.print("[dim]No agents registered.[/dim]")
        return

    table = Table(title="Registered Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Isolation")
    table.add_column("Status")
    table.add_column("Updated")

    for record in records:
        data = record.data
        table.add_row(
            record.id,
            data.get("name", "-"),
            data.get("version", "-"),
            data.get("isolation_level", "-"),
            data.get("status", "-"),
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def show_agent(agent_id: str, config_path: str | None = None) -> None:
    """Show one agent record."""
    registry = _open(config_path)
    try:
        data = registry.get_agent(agent_id)
    finally:
        registry.close()

    if data is None:
        console.print(f"[red]Agent '{agent_id}' not found.[/red]")
        raise typer.Exit(1)
    console.print_json(json.dumps(data))


def delete_agent(agent_id: str, config_path: str | None = None) -> None:
    """Remove an agent record."""
    registry = _open(config_path)
    try:
        deleted = registry.delete_agent(agent_id)
    finally:
        registry.close()

    if not deleted:
        console.print(f"[red]Agent '{agent_id}' not found.[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Deleted agent '{agent_id}'[/green]")


def purge_context(agent_id: str | None = None, config_path: str | None = None) -> None:
    """Delete stored session contexts."""
    registry = _open(config_path)
    try:
        count = registry.purge_context(agent_id)
    finally:
        registry.close()

    scope = f"agent '{agent_id}'" if agent_id else "all agents"
    console.print(f"Purged {count} context record(s) for {scope}")
