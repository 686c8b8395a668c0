"""Code generation: PluginSpec to a buildable Go source tree.

The generated tree is a Go ``c-shared`` module. ``main.go`` exports the
artifact ABI and embeds the ``bundle/`` directory, which carries the tool
modules, the interpreter service and its requirements.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import tempfile
import textwrap
from dataclasses import dataclass, field
from importlib import resources as importlib_resources
from pathlib import Path

from agentforge.compiler.embedder import embed, go_string
from agentforge.compiler.template import load_template, render
from agentforge.config.schema import DEFAULT_INTERPRETER_REQUIREMENTS, ForgeConfig
from agentforge.errors import GenerationError
from agentforge.spec.models import ParameterSpec, PluginSpec, ToolSpec, check_spec

logger = logging.getLogger(__name__)

TEMPLATE_NAMES = (
    "main.go.tmpl",
    "resources.go.tmpl",
    "go.mod.tmpl",
    "tool.py.tmpl",
    "requirements.txt.tmpl",
)

BUNDLE_DIR = "bundle"
SERVICE_FILENAME = "agent_service.py"


@dataclass
class SourceTree:
    """A generated, buildable source tree."""

    spec: PluginSpec
    root: Path
    main_file: Path
    resources_file: Path
    module_file: Path
    tool_files: dict[str, Path] = field(default_factory=dict)
    bootstrap_file: Path | None = None
    requirements_file: Path | None = None

    @property
    def bundle_dir(self) -> Path:
        return self.root / BUNDLE_DIR

    def files(self) -> list[Path]:
        files = [self.main_file, self.resources_file, self.module_file, *self.tool_files.values()]
        if self.bootstrap_file is not None:
            files.append(self.bootstrap_file)
        if self.requirements_file is not None:
            files.append(self.requirements_file)
        return files

    def cleanup(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)


def interpreter_service_source() -> str:
    """Source of the interpreter service shipped inside every bundle."""
    return (
        importlib_resources.files("agentforge.interpreter")
        .joinpath("service.py")
        .read_text(encoding="utf-8")
    )


def _sanitize_id(value: str) -> str:
    return re.sub(r"[^a-z0-9._-]", "-", value.lower())


def _mutable_default(param: ParameterSpec) -> bool:
    return not param.required and isinstance(param.default, (list, dict))


def _signature(parameters: list[ParameterSpec]) -> str:
    if not parameters:
        return ""
    parts = []
    for param in parameters:
        if param.required:
            parts.append(param.name)
        elif _mutable_default(param):
            parts.append(f"{param.name}=None")
        else:
            parts.append(f"{param.name}={param.default!r}")
    return "*, " + ", ".join(parts)


def _body(implementation: str, parameters: list[ParameterSpec] | None = None) -> str:
    code = textwrap.dedent(implementation).strip("\n")
    if not code.strip():
        code = "pass"
    # List and dict defaults are rebuilt from a literal on every call
    prelude = "".join(
        f"if {param.name} is None:\n    {param.name} = {param.default!r}\n"
        for param in parameters or []
        if _mutable_default(param)
    )
    return textwrap.indent(prelude + code, "    ", lambda line: True)


class CodeGenerator:
    """Turns a PluginSpec into a SourceTree under ``output_dir``."""

    def __init__(
        self,
        output_dir: str | Path,
        template_dir: str | Path | None = None,
        interpreter_requirements: list[str] | None = None,
        go_version: str = "1.21",
        module_prefix: str = "agentforge.local/plugins",
    ) -> None:
        self.output_dir = Path(output_dir)
        self.template_dir = Path(template_dir) if template_dir else None
        self.interpreter_requirements = (
            list(DEFAULT_INTERPRETER_REQUIREMENTS)
            if interpreter_requirements is None
            else list(interpreter_requirements)
        )
        self.go_version = go_version
        self.module_prefix = module_prefix.rstrip("/")

    @classmethod
    def from_config(cls, config: ForgeConfig) -> CodeGenerator:
        return cls(
            output_dir=config.compiler.output_dir,
            template_dir=config.compiler.template_dir,
            interpreter_requirements=config.interpreter.requirements,
            go_version=config.compiler.go_version,
            module_prefix=config.compiler.module_prefix,
        )

    def generate(self, spec: PluginSpec, base_dir: str | Path | None = None) -> SourceTree:
        """Generate the source tree for a spec.

        Args:
            spec: Plugin to generate
            base_dir: Directory relative tool file references resolve against
                (defaults to the current directory)

        Returns:
            The generated tree in a fresh build directory

        Raises:
            SpecValidationError: If the spec breaks a cross-field invariant
            GenerationError: If a template or tool file cannot be read
        """
        check_spec(spec)
        templates = {name: load_template(self.template_dir, name) for name in TEMPLATE_NAMES}

        self.output_dir.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=f"build-{_sanitize_id(spec.id)}-", dir=self.output_dir))
        logger.info("Generating %s into %s", spec.build_key, root)

        try:
            tree = self._write_tree(spec, root, templates, Path(base_dir) if base_dir else Path.cwd())
        except BaseException:
            shutil.rmtree(root, ignore_errors=True)
            raise

        logger.debug("Generated %d files for %s", len(tree.files()), spec.build_key)
        return tree

    def _write_tree(
        self,
        spec: PluginSpec,
        root: Path,
        templates: dict[str, str],
        base_dir: Path,
    ) -> SourceTree:
        identity = {"agentName": spec.name, "agentVersion": spec.version}

        manifest = embed("manifest", json.dumps(spec.model_dump(mode="json")), prefix="manifest")
        if spec.embed_interpreter:
            bundle_directive = f"//go:embed all:{BUNDLE_DIR}\nvar bundleFS embed.FS"
        else:
            bundle_directive = "var bundleFS embed.FS"

        main_file = root / "main.go"
        main_file.write_text(
            render(
                templates["main.go.tmpl"],
                {
                    "agentID": go_string(spec.id),
                    "agentName": go_string(spec.name),
                    "agentVersion": go_string(spec.version),
                    "agentKind": go_string(spec.kind),
                    "isolationLevel": go_string(spec.tee.isolation_level),
                    "bundleDirective": bundle_directive,
                    "manifestDeclaration": manifest.declaration,
                    "manifestIdentifier": manifest.identifier,
                },
            )
        )

        resources_file = root / "resources.go"
        resources_file.write_text(self._render_resources(spec, templates["resources.go.tmpl"]))

        module_file = root / "go.mod"
        module_file.write_text(
            render(
                templates["go.mod.tmpl"],
                {
                    "modulePath": f"{self.module_prefix}/{_sanitize_id(spec.id)}",
                    "goVersion": self.go_version,
                },
            )
        )

        tree = SourceTree(
            spec=spec,
            root=root,
            main_file=main_file,
            resources_file=resources_file,
            module_file=module_file,
        )
        if not spec.embed_interpreter:
            return tree

        tools_dir = root / BUNDLE_DIR / "tools"
        tools_dir.mkdir(parents=True)
        for tool in spec.tools:
            path = tools_dir / f"{tool.name}.py"
            if tool.is_file_reference:
                path.write_bytes(self._read_tool_file(tool, base_dir))
            else:
                path.write_text(
                    render(
                        templates["tool.py.tmpl"],
                        {
                            **identity,
                            "toolName": tool.name,
                            "toolDescription": " ".join(tool.description.split()),
                            "signature": _signature(tool.parameters),
                            "body": _body(tool.implementation or "", tool.parameters),
                        },
                    )
                )
            tree.tool_files[tool.name] = path

        tree.bootstrap_file = root / BUNDLE_DIR / SERVICE_FILENAME
        tree.bootstrap_file.write_text(interpreter_service_source(), encoding="utf-8")

        tree.requirements_file = root / BUNDLE_DIR / "requirements.txt"
        tree.requirements_file.write_text(
            render(
                templates["requirements.txt.tmpl"],
                {
                    **identity,
                    "requirements": "\n".join(spec.requirements(self.interpreter_requirements)),
                },
            )
        )
        return tree

    def _render_resources(self, spec: PluginSpec, template: str) -> str:
        declarations = []
        resource_entries = []
        prompt_entries = []
        for resource in spec.resources:
            embedded = embed(resource.name, resource.payload)
            declarations.append(embedded.declaration)
            resource_entries.append(f"\t{go_string(resource.name)}: {embedded.identifier},")
        for prompt in spec.prompts:
            embedded = embed(prompt.name, prompt.payload, prefix="prompt")
            declarations.append(embedded.declaration)
            prompt_entries.append(f"\t{go_string(prompt.name)}: {embedded.identifier},")

        return render(
            template,
            {
                "resourceDeclarations": "\n\n".join(declarations),
                "resourceEntries": "\n".join(resource_entries),
                "promptEntries": "\n".join(prompt_entries),
            },
        )

    @staticmethod
    def _read_tool_file(tool: ToolSpec, base_dir: Path) -> bytes:
        path = Path(tool.implementation_file or "")
        if not path.is_absolute():
            path = base_dir / path
        try:
            return path.read_bytes()
        except OSError as e:
            raise GenerationError(
                f"Tool '{tool.name}' implementation file not found: {path}",
                tool_name=tool.name,
                path=str(path),
            ) from e
