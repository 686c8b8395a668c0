"""Trusted execution environment abstraction.

A TEE is an isolation boundary with resource limits. Every variant supports
the same capabilities: start, stop, execute, launch, provision and file
transfer in both directions. ``execute`` calls on one instance are
serialized; at most one long-lived service process runs per instance.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import Any

from agentforge.config.schema import TEEConfig
from agentforge.errors import TEEBusyError, TEEStartError, TEEStateError
from agentforge.spec.models import IsolationLevel, ResourceLimits, TEESpec

logger = logging.getLogger(__name__)


class TEEState(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class ExecResult:
    """Result of one command executed inside a TEE."""

    stdout: str
    stderr: str
    exit_code: int
    duration: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def sanitize_path(path: str | Path) -> str:
    """Normalize a path inside the boundary, relative to its working directory.

    Raises:
        ValueError: If the path is empty or escapes the working directory
    """
    clean = PurePosixPath(str(path).replace("\\", "/").lstrip("/"))
    if ".." in clean.parts or not clean.parts or str(clean) == ".":
        raise ValueError(f"Invalid path: {path}")
    return str(clean)


class TrustedExecutionEnvironment(ABC):
    """Base class for isolation boundaries."""

    isolation_level: IsolationLevel

    def __init__(self, spec: TEESpec, config: TEEConfig | None = None, name: str | None = None) -> None:
        self.spec = spec
        self.config = config or TEEConfig()
        self.name = name or f"agentforge-{uuid.uuid4().hex[:12]}"
        self.state = TEEState.CREATED
        self._exec_lock = asyncio.Lock()

    @property
    def limits(self) -> ResourceLimits:
        return self.spec.limits

    @property
    @abstractmethod
    def python_executable(self) -> str:
        """Python interpreter to invoke inside the boundary."""

    @property
    @abstractmethod
    def workdir(self) -> str:
        """Working directory inside the boundary."""

    @property
    def busy(self) -> bool:
        return self._exec_lock.locked()

    async def start(self) -> None:
        """Allocate the boundary. Idempotent while running.

        Raises:
            TEEStartError: If the boundary cannot be created or was stopped
        """
        if self.state == TEEState.RUNNING:
            return
        if self.state == TEEState.STOPPED:
            raise TEEStartError(f"TEE {self.name} has been stopped and cannot be restarted")
        await self._start()
        self.state = TEEState.RUNNING
        logger.info("Started %s TEE %s", self.isolation_level, self.name)

    async def stop(self) -> None:
        """Release the boundary and everything inside it. Idempotent."""
        if self.state == TEEState.RUNNING:
            try:
                await self._stop()
            finally:
                self.state = TEEState.STOPPED
            logger.info("Stopped %s TEE %s", self.isolation_level, self.name)
        else:
            self.state = TEEState.STOPPED

    async def execute(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        wait: bool = True,
    ) -> ExecResult:
        """Run a command to completion inside the boundary.

        A non-zero exit code is a normal result.

        Args:
            command: Executable to run
            args: Command arguments
            timeout: Wall-clock limit (defaults to ``limits.timeout_sec``)
            env: Extra environment variables
            wait: Queue behind a running command instead of raising TEEBusyError

        Raises:
            TEEStateError: If the TEE is not running
            TEEBusyError: If another command is running and ``wait`` is False
            ExecutionTimeout: If the wall-clock limit was hit; the process is killed
            ResourceExceeded: If the memory or CPU limit was hit
        """
        self._require_running()
        if not wait and self._exec_lock.locked():
            raise TEEBusyError(f"TEE {self.name} is already executing a command")
        async with self._exec_lock:
            self._require_running()
            limit = float(timeout if timeout is not None else self.limits.timeout_sec)
            return await self._execute([command, *(args or [])], limit, env or {})

    async def launch(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        env: dict[str, str] | None = None,
    ) -> None:
        """Start the long-lived service process inside the boundary.

        Raises:
            TEEStateError: If the TEE is not running or a service is already alive
        """
        self._require_running()
        if await self.service_alive():
            raise TEEStateError(f"TEE {self.name} already runs a service process")
        await self._launch([command, *(args or [])], env or {})

    async def copy_file_in(self, src: str | Path, dest: str) -> None:
        """Copy a host file or directory into the boundary (relative ``dest``)."""
        self._require_running()
        await self._copy_in(Path(src), sanitize_path(dest))

    async def copy_file_out(self, src: str, dest: str | Path) -> None:
        """Copy a file or directory out of the boundary (relative ``src``)."""
        self._require_running()
        await self._copy_out(sanitize_path(src), Path(dest))

    @abstractmethod
    async def provision(self, requirements: list[str]) -> None:
        """Prepare the interpreter environment before start."""

    @abstractmethod
    async def service_alive(self) -> bool:
        """Whether the launched service process is still running."""

    @abstractmethod
    async def service_logs(self) -> str:
        """Captured output of the service process."""

    @abstractmethod
    async def _start(self) -> None: ...

    @abstractmethod
    async def _stop(self) -> None: ...

    @abstractmethod
    async def _execute(self, argv: list[str], timeout: float, env: dict[str, str]) -> ExecResult: ...

    @abstractmethod
    async def _launch(self, argv: list[str], env: dict[str, str]) -> None: ...

    @abstractmethod
    async def _copy_in(self, src: Path, dest: str) -> None: ...

    @abstractmethod
    async def _copy_out(self, src: str, dest: Path) -> None: ...

    def _require_running(self) -> None:
        if self.state != TEEState.RUNNING:
            raise TEEStateError(f"TEE {self.name} is {self.state}, not running")

    def _base_env(self) -> dict[str, str]:
        return {
            "AGENTFORGE_WORKDIR": self.workdir,
            "AGENTFORGE_NETWORK": "1" if self.spec.network_access else "0",
            "AGENTFORGE_FILESYSTEM": "1" if self.spec.filesystem_access else "0",
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONUNBUFFERED": "1",
        }

    async def __aenter__(self) -> TrustedExecutionEnvironment:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {self.state}>"
