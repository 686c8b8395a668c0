"""Main CLI application using Typer."""

import typer

from agentforge import __version__
from agentforge.cli.common import console

app = typer.Typer(
    name="agentforge",
    help="agentforge - compile agent plugins into isolated native artifacts",
    no_args_is_help=True,
)

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file (default: ~/.agentforge/agentforge.yaml)",
)
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


@app.command()
def version(
    toolchain: bool = typer.Option(False, "--toolchain", help="Also show the Go toolchain version"),
):
    """Show agentforge version."""
    console.print(f"agentforge version {__version__}")
    if toolchain:
        import asyncio

        from rich.markup import escape

        from agentforge.cli.common import load_cli_config
        from agentforge.compiler.builder import BuildOrchestrator
        from agentforge.errors import ToolchainError

        config = load_cli_config()
        try:
            console.print(asyncio.run(BuildOrchestrator(config.toolchain).toolchain_version()))
        except ToolchainError as e:
            console.print(f"[red]{escape(str(e))}[/red]")
            raise typer.Exit(1) from e


@app.command()
def generate(
    spec: str = typer.Argument(..., help="Plugin spec file (YAML or JSON)"),
    out: str = typer.Option(None, "--out", "-o", help="Directory for the generated tree"),
    config_path: str = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Generate plugin sources without building."""
    from agentforge.cli.compile_cmd import generate_command

    generate_command(spec, out_dir=out, config_path=config_path, verbose=verbose)


@app.command("compile")
def compile_(
    spec: str = typer.Argument(..., help="Plugin spec file (YAML or JSON)"),
    platform: str = typer.Option(
        None, "--platform", "-p", help="Target platform, e.g. linux/amd64 (default: host)"
    ),
    output: str = typer.Option(None, "--output", "-o", help="Artifact output directory"),
    keep_build: bool = typer.Option(False, "--keep-build", help="Keep generated sources"),
    config_path: str = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Compile a plugin spec into a native artifact."""
    from agentforge.cli.compile_cmd import compile_command

    compile_command(
        spec,
        platform=platform,
        output=output,
        keep_build=keep_build,
        config_path=config_path,
        verbose=verbose,
    )


@app.command()
def inspect(
    artifact: str = typer.Argument(..., help="Compiled plugin artifact"),
    verbose: bool = VerboseOption,
):
    """Show the manifest and contents of an artifact."""
    from agentforge.cli.compile_cmd import inspect_command

    inspect_command(artifact, verbose=verbose)


@app.command()
def run(
    artifact: str = typer.Argument(..., help="Compiled plugin artifact"),
    input_text: str = typer.Option(..., "--input", "-i", help="Input text or JSON"),
    session: str = typer.Option(None, "--session", "-s", help="Session id to continue"),
    tool: str = typer.Option(None, "--tool", "-t", help="Run a single named tool"),
    config_path: str = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Run a compiled plugin once inside its TEE."""
    from agentforge.cli.run_cmd import run_command

    run_command(
        artifact,
        input_text,
        session_id=session,
        tool=tool,
        config_path=config_path,
        verbose=verbose,
    )


# Registry commands
registry_app = typer.Typer(help="Inspect the agent registry")
app.add_typer(registry_app, name="registry")


@registry_app.command("agents")
def registry_agents(config_path: str = ConfigOption):
    """List registered agents."""
    from agentforge.cli.registry_cmd import list_agents

    list_agents(config_path)


@registry_app.command("show")
def registry_show(
    agent_id: str = typer.Argument(..., help="Agent id"),
    config_path: str = ConfigOption,
):
    """Show one registered agent."""
    from agentforge.cli.registry_cmd import show_agent

    show_agent(agent_id, config_path)


@registry_app.command("delete")
def registry_delete(
    agent_id: str = typer.Argument(..., help="Agent id"),
    config_path: str = ConfigOption,
):
    """Delete a registered agent."""
    from agentforge.cli.registry_cmd import delete_agent

    delete_agent(agent_id, config_path)


@registry_app.command("purge-context")
def registry_purge_context(
    agent_id: str = typer.Option(None, "--agent", "-a", help="Only this agent's contexts"),
    config_path: str = ConfigOption,
):
    """Delete stored session contexts."""
    from agentforge.cli.registry_cmd import purge_context

    purge_context(agent_id, config_path)


if __name__ == "__main__":
    app()
