"""Build orchestration: drives the Go toolchain over a generated tree."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from agentforge.compiler.generator import SourceTree
from agentforge.compiler.platform import TargetPlatform
from agentforge.config.schema import ToolchainConfig
from agentforge.errors import ToolchainError

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class BuildResult:
    """Outcome of one build attempt."""

    success: bool
    artifact_path: Path | None
    stdout: str
    stderr: str
    exit_code: int | None
    duration: float
    platform: TargetPlatform
    build_dir: Path | None = None
    timed_out: bool = False

    def raise_for_status(self) -> None:
        """Raise ToolchainError if the build failed."""
        if self.success:
            return
        if self.timed_out:
            message = f"Build for {self.platform} timed out after {self.duration:.1f}s"
        else:
            message = f"Build for {self.platform} failed with exit code {self.exit_code}"
        raise ToolchainError(message, exit_code=self.exit_code, stderr=self.stderr)


def _kill_group(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        os.killpg(process.pid, signal.SIGKILL)


class BuildOrchestrator:
    """Runs ``go build -buildmode=c-shared`` for a SourceTree."""

    def __init__(self, toolchain: ToolchainConfig | None = None, output_dir: str | Path = ".") -> None:
        self.toolchain = toolchain or ToolchainConfig()
        self.output_dir = Path(output_dir)

    def command(self, artifact: Path) -> list[str]:
        return [
            self.toolchain.go_binary,
            "build",
            "-buildmode=c-shared",
            "-trimpath",
            "-o",
            str(artifact),
            ".",
        ]

    def environment(self, platform: TargetPlatform) -> dict[str, str]:
        env = {**os.environ, **platform.go_env()}
        if self.toolchain.cc:
            env["CC"] = self.toolchain.cc
        return env

    async def toolchain_version(self) -> str:
        """Return ``go version`` output.

        Raises:
            ToolchainError: If the toolchain is missing or broken
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.toolchain.go_binary,
                "version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ToolchainError(f"Toolchain binary '{self.toolchain.go_binary}' not found") from e
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise ToolchainError(
                "Toolchain version check failed",
                exit_code=process.returncode,
                stderr=stderr.decode("utf-8", errors="replace"),
            )
        return stdout.decode("utf-8", errors="replace").strip()

    async def build(
        self,
        tree: SourceTree,
        platform: TargetPlatform | None = None,
        *,
        on_output: OutputCallback | None = None,
        keep_build_dir: bool | None = None,
        timeout: float | None = None,
    ) -> BuildResult:
        """Build the artifact for one platform.

        Args:
            tree: Generated source tree
            platform: Target platform (defaults to the host)
            on_output: Called with ``(stream, line)`` for every output line
            keep_build_dir: Keep the generated sources (defaults to config)
            timeout: Build timeout in seconds (defaults to config)

        Returns:
            BuildResult; a failed toolchain run is a result, not an exception

        Raises:
            ToolchainError: If the toolchain binary cannot be started
            asyncio.CancelledError: If the caller cancels; the toolchain is killed
        """
        platform = platform or TargetPlatform.host()
        keep = self.toolchain.keep_build_dir if keep_build_dir is None else keep_build_dir
        timeout = self.toolchain.build_timeout if timeout is None else timeout

        self.output_dir.mkdir(parents=True, exist_ok=True)
        artifact = (self.output_dir / platform.artifact_name(tree.spec)).resolve()
        artifact.unlink(missing_ok=True)

        cmd = self.command(artifact)
        logger.info("Building %s for %s", tree.spec.build_key, platform)
        logger.debug("Running %s in %s", " ".join(cmd), tree.root)

        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=tree.root,
                env=self.environment(platform),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            self._finish(tree, artifact, keep)
            raise ToolchainError(f"Toolchain binary '{self.toolchain.go_binary}' not found") from e

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        async def _pump(stream: asyncio.StreamReader, name: str, sink: list[str]) -> None:
            while True:
                line = await stream.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip("\r\n")
                sink.append(text)
                logger.debug("[go %s] %s", name, text)
                if on_output is not None:
                    on_output(name, text)

        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    _pump(process.stdout, "stdout", stdout_lines),
                    _pump(process.stderr, "stderr", stderr_lines),
                    process.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            _kill_group(process)
            await process.wait()
            logger.warning("Build of %s timed out after %ss", tree.spec.build_key, timeout)
        except asyncio.CancelledError:
            _kill_group(process)
            await process.wait()
            self._finish(tree, artifact, keep)
            raise

        duration = time.monotonic() - start
        exit_code = process.returncode
        success = not timed_out and exit_code == 0 and artifact.exists()
        if exit_code == 0 and not timed_out and not success:
            stderr_lines.append(f"toolchain exited 0 but {artifact} was not produced")

        self._finish(tree, artifact, keep)
        if success:
            logger.info("Built %s in %.1fs", artifact.name, duration)
        else:
            logger.error("Build of %s failed (exit code %s)", tree.spec.build_key, exit_code)

        return BuildResult(
            success=success,
            artifact_path=artifact if success else None,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
            exit_code=exit_code,
            duration=duration,
            platform=platform,
            build_dir=tree.root if keep else None,
            timed_out=timed_out,
        )

    @staticmethod
    def _finish(tree: SourceTree, artifact: Path, keep: bool) -> None:
        artifact.with_suffix(".h").unlink(missing_ok=True)
        if not keep:
            shutil.rmtree(tree.root, ignore_errors=True)
