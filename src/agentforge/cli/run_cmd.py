"""CLI command for running a compiled plugin."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import typer
from rich.markup import escape

from agentforge.cli.common import console, load_cli_config
from agentforge.errors import AgentForgeError


def _parse_input(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return text


def run_command(
    artifact_path: str,
    input_text: str,
    session_id: str | None = None,
    tool: str | None = None,
    config_path: str | None = None,
    verbose: bool = False,
) -> None:
    """Load an artifact, start it in its TEE and run one request."""
    from agentforge.registry.store import Registry
    from agentforge.runtime.plugin import PluginRuntime
    from agentforge.runtime.protocol import InferenceRequest

    config = load_cli_config(config_path, verbose)
    registry = Registry(config.registry.db_path, credential_key=config.registry.credential_key)

    async def _run():
        runtime = PluginRuntime.from_artifact(artifact_path, registry=registry, config=config)
        runtime.initialize()
        async with runtime:
            return await runtime.process_inference(
                InferenceRequest(input=_parse_input(input_text), session_id=session_id, tool=tool)
            )

    try:
        response = asyncio.run(_run())
    except AgentForgeError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from e
    finally:
        registry.close()

    output = response.output
    if isinstance(output, str):
        console.print(output, markup=False, highlight=False)
    else:
        console.print_json(data=output)
    console.print(f"[dim]session {response.session_id} ({response.duration:.2f}s)[/dim]")
