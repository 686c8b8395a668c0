"""Error taxonomy for agentforge.

Every error carries the stage it originated from, and toolchain or
interpreter errors keep the captured diagnostic text verbatim.
"""

from __future__ import annotations

from enum import StrEnum


class Stage(StrEnum):
    """Pipeline stage an error originated from."""

    VALIDATION = "validation"
    GENERATION = "generation"
    BUILD = "build"
    ISOLATION = "isolation"
    INTERPRETER = "interpreter"
    RUNTIME = "runtime"
    REGISTRY = "registry"


class AgentForgeError(Exception):
    """Base class for all agentforge errors."""

    stage: Stage = Stage.RUNTIME

    def __init__(self, message: str, *, diagnostics: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        text = f"[{self.stage}] {self.message}"
        if self.diagnostics:
            text += f"\n{self.diagnostics}"
        return text


class SpecValidationError(AgentForgeError):
    """Invalid PluginSpec, detected before any filesystem or process work."""

    stage = Stage.VALIDATION

    def __init__(self, message: str, *, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or [message]


class GenerationError(AgentForgeError):
    """Template, resource or tool file-reference problem during generation."""

    stage = Stage.GENERATION

    def __init__(
        self,
        message: str,
        *,
        tool_name: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.path = path


class ToolchainError(AgentForgeError):
    """The external toolchain failed or could not be invoked."""

    stage = Stage.BUILD

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message, diagnostics=stderr or None)
        self.exit_code = exit_code
        self.stderr = stderr


class TEEStartError(AgentForgeError):
    """The isolation boundary (or the interpreter inside it) failed to start."""

    stage = Stage.ISOLATION


class TEEStateError(AgentForgeError):
    """Operation attempted on a TEE that is not running."""

    stage = Stage.ISOLATION


class TEEBusyError(AgentForgeError):
    """The TEE is already executing a command and the caller asked not to wait."""

    stage = Stage.ISOLATION


class TEEExecError(AgentForgeError):
    """A command could not be spawned inside the TEE."""

    stage = Stage.ISOLATION


class ResourceExceeded(AgentForgeError):
    """A process running inside a TEE violated one of its resource limits."""

    stage = Stage.ISOLATION

    def __init__(
        self,
        message: str,
        *,
        resource: str,
        limit: float | int | None = None,
        diagnostics: str | None = None,
    ) -> None:
        super().__init__(message, diagnostics=diagnostics)
        self.resource = resource
        self.limit = limit


class ExecutionTimeout(ResourceExceeded):
    """Wall-clock timeout exceeded; the process has been killed."""

    def __init__(self, timeout: float, *, diagnostics: str | None = None) -> None:
        super().__init__(
            f"Execution timed out after {timeout}s",
            resource="time",
            limit=timeout,
            diagnostics=diagnostics,
        )


class InterpreterError(AgentForgeError):
    """Application-level failure reported by the embedded interpreter."""

    stage = Stage.INTERPRETER


class InterpreterTransportError(AgentForgeError):
    """The interpreter could not be reached or returned an unreadable reply."""

    stage = Stage.INTERPRETER


class ArtifactLoadError(AgentForgeError):
    """A compiled artifact could not be loaded or decoded."""

    stage = Stage.RUNTIME


class LifecycleError(AgentForgeError):
    """Plugin runtime operation invalid in the current lifecycle state."""

    stage = Stage.RUNTIME


class RecordNotFoundError(AgentForgeError):
    """A registry record required by the operation does not exist."""

    stage = Stage.REGISTRY


class CredentialError(AgentForgeError):
    """A stored credential cannot be decrypted with the configured key."""

    stage = Stage.REGISTRY
