"""End-to-end compilation: validate, generate, build, describe."""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from agentforge import __version__
from agentforge.compiler.builder import BuildOrchestrator, BuildResult, OutputCallback
from agentforge.compiler.generator import CodeGenerator, SourceTree
from agentforge.compiler.platform import TargetPlatform
from agentforge.config.schema import ForgeConfig
from agentforge.spec.models import PluginSpec, check_spec

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, str], None]


@dataclass
class CompilationResult:
    """Build result plus the deployment info written next to the artifact."""

    build: BuildResult
    deployment_file: Path | None = None

    @property
    def success(self) -> bool:
        return self.build.success

    @property
    def artifact_path(self) -> Path | None:
        return self.build.artifact_path


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def deployment_info(spec: PluginSpec, result: BuildResult) -> dict:
    """Describe a successful build for deployment tooling."""
    artifact = result.artifact_path
    if artifact is None:
        raise ValueError("deployment info requires a successful build")
    return {
        "agent_id": spec.id,
        "agent_name": spec.name,
        "version": spec.version,
        "kind": str(spec.kind),
        "isolation_level": str(spec.tee.isolation_level),
        "platform": str(result.platform),
        "compiled_at": datetime.now(UTC).isoformat(),
        "compiler_version": __version__,
        "artifact": artifact.name,
        "size": artifact.stat().st_size,
        "sha256": sha256_file(artifact),
    }


class PluginCompiler:
    """Compiles PluginSpecs into loadable artifacts."""

    def __init__(
        self,
        config: ForgeConfig | None = None,
        generator: CodeGenerator | None = None,
        orchestrator: BuildOrchestrator | None = None,
    ) -> None:
        self.config = config or ForgeConfig()
        self.generator = generator or CodeGenerator.from_config(self.config)
        self.orchestrator = orchestrator or BuildOrchestrator(
            self.config.toolchain, self.config.compiler.output_dir
        )

    def generate(self, spec: PluginSpec, base_dir: str | Path | None = None) -> SourceTree:
        return self.generator.generate(spec, base_dir=base_dir)

    async def compile(
        self,
        spec: PluginSpec,
        platform: TargetPlatform | None = None,
        *,
        base_dir: str | Path | None = None,
        on_progress: ProgressCallback | None = None,
        on_output: OutputCallback | None = None,
        keep_build_dir: bool | None = None,
        timeout: float | None = None,
    ) -> CompilationResult:
        """Compile one spec for one platform.

        Validation and generation problems raise; a failed toolchain run is
        reported through the returned result.
        """
        platform = platform or TargetPlatform.host()

        def progress(stage: str, percent: int, message: str) -> None:
            logger.info("[%s %d%%] %s", stage, percent, message)
            if on_progress is not None:
                on_progress(stage, percent, message)

        progress("validation", 0, f"Validating {spec.name}")
        check_spec(spec)

        progress("generation", 10, "Generating source tree")
        tree = self.generator.generate(spec, base_dir=base_dir)

        progress("build", 30, f"Building for {platform}")
        result = await self.orchestrator.build(
            tree,
            platform,
            on_output=on_output,
            keep_build_dir=keep_build_dir,
            timeout=timeout,
        )
        if not result.success:
            progress("build", 100, "Build failed")
            return CompilationResult(build=result)

        progress("packaging", 90, "Writing deployment info")
        info = deployment_info(spec, result)
        deployment_file = result.artifact_path.with_suffix(".json")
        deployment_file.write_text(json.dumps(info, indent=2))

        progress("done", 100, f"Compiled {result.artifact_path.name}")
        return CompilationResult(build=result, deployment_file=deployment_file)
