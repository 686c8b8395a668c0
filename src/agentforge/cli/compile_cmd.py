"""CLI commands for generating, compiling and inspecting plugins."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.markup import escape
from rich.progress import Progress
from rich.table import Table

from agentforge.cli.common import console, load_cli_config
from agentforge.errors import AgentForgeError


def _load_spec(spec_path: str):
    from agentforge.spec.loader import load_plugin_spec

    try:
        return load_plugin_spec(spec_path)
    except AgentForgeError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from e


def generate_command(
    spec_path: str,
    out_dir: str | None = None,
    config_path: str | None = None,
    verbose: bool = False,
) -> None:
    """Generate the source tree for a plugin spec without building it."""
    from agentforge.compiler.generator import CodeGenerator

    config = load_cli_config(config_path, verbose)
    spec = _load_spec(spec_path)

    generator = CodeGenerator.from_config(config)
    if out_dir:
        generator.output_dir = Path(out_dir)

    try:
        tree = generator.generate(spec, base_dir=Path(spec_path).resolve().parent)
    except AgentForgeError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from e

    console.print(f"[green]Generated[/green] {spec.name} v{spec.version} in {tree.root}")
    for path in tree.files():
        console.print(f"  {path.relative_to(tree.root)}")


def compile_command(
    spec_path: str,
    platform: str | None = None,
    output: str | None = None,
    keep_build: bool = False,
    config_path: str | None = None,
    verbose: bool = False,
) -> None:
    """Compile a plugin spec into a native artifact."""
    from agentforge.compiler.pipeline import PluginCompiler
    from agentforge.compiler.platform import TargetPlatform

    config = load_cli_config(config_path, verbose)
    if output:
        config.compiler.output_dir = Path(output)
    spec = _load_spec(spec_path)

    try:
        target = TargetPlatform.parse(platform) if platform else TargetPlatform.host()
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from e

    compiler = PluginCompiler(config)

    with Progress(console=console, transient=True) as progress:
        task = progress.add_task(f"Compiling {spec.name}", total=100)

        def on_progress(stage: str, percent: int, message: str) -> None:
            progress.update(task, completed=percent, description=f"[{stage}] {message}")

        try:
            result = asyncio.run(
                compiler.compile(
                    spec,
                    target,
                    base_dir=Path(spec_path).resolve().parent,
                    on_progress=on_progress,
                    keep_build_dir=keep_build,
                )
            )
        except AgentForgeError as e:
            console.print(f"[red]{escape(str(e))}[/red]")
            raise typer.Exit(1) from e

    if not result.success:
        console.print(f"[red]Build failed for {target} (exit code {result.build.exit_code})[/red]")
        if result.build.stderr:
            console.print(result.build.stderr, markup=False, highlight=False)
        raise typer.Exit(1)

    console.print(f"[green]Compiled[/green] {result.artifact_path}")
    console.print(f"  Deployment info: {result.deployment_file}")
    if result.build.build_dir:
        console.print(f"  Sources kept in: {result.build.build_dir}")


def inspect_command(artifact_path: str, verbose: bool = False) -> None:
    """Show what an artifact contains."""
    from agentforge.runtime.artifact import load_artifact

    load_cli_config(None, verbose)
    try:
        bundle = load_artifact(artifact_path)
    except AgentForgeError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from e

    spec = bundle.spec
    console.print(f"\n[bold cyan]{spec.name}[/bold cyan] v{spec.version}")
    console.print(f"  ID: {spec.id}")
    console.print(f"  Kind: {spec.kind}")
    if spec.description:
        console.print(f"  {spec.description}")
    console.print(
        f"  Isolation: {spec.tee.isolation_level} "
        f"({spec.tee.limits.memory_mb}MB, {spec.tee.limits.cpu_cores} cores, "
        f"{spec.tee.limits.timeout_sec}s)"
    )
    console.print(f"  Network: {spec.tee.network_access}  Filesystem: {spec.tee.filesystem_access}")

    if spec.tools:
        table = Table(title="Tools")
        table.add_column("Name", style="cyan")
        table.add_column("Parameters")
        table.add_column("Returns")
        for tool in spec.tools:
            table.add_row(
                tool.name,
                ", ".join(f"{p.name}: {p.type}" for p in tool.parameters) or "-",
                tool.return_type,
            )
        console.print(table)

    if bundle.resources or bundle.prompts:
        console.print(f"  Resources: {', '.join(bundle.resources) or '-'}")
        console.print(f"  Prompts: {', '.join(bundle.prompts) or '-'}")
    console.print(f"  Bundle files: {len(bundle.files)}")
