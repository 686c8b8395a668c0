"""Pydantic models for agentforge.yaml configuration."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

DEFAULT_HOME = Path.home() / ".agentforge"

DEFAULT_INTERPRETER_REQUIREMENTS = [
    "fastapi>=0.110",
    "uvicorn>=0.29",
    "httpx>=0.27",
    "pydantic>=2.6",
]


class CompilerConfig(BaseModel):
    """Code generation configuration."""

    template_dir: Path | None = Field(
        default=None,
        description="Template directory (None uses the templates shipped with agentforge)",
    )
    output_dir: Path = Field(
        default=DEFAULT_HOME / "build",
        description="Directory receiving build directories and artifacts",
    )
    go_version: str = Field(default="1.21", description="Go language version written to go.mod")
    module_prefix: str = Field(
        default="agentforge.local/plugins",
        description="Go module path prefix for generated plugins",
    )


class ToolchainConfig(BaseModel):
    """External build toolchain configuration."""

    go_binary: str = Field(default="go", description="Go toolchain executable")
    cc: str | None = Field(default=None, description="C compiler for cgo cross builds")
    build_timeout: float = Field(default=600.0, description="Build timeout in seconds", gt=0)
    keep_build_dir: bool = Field(default=False, description="Keep generated sources after building")


class InterpreterConfig(BaseModel):
    """Embedded interpreter configuration."""

    requirements: list[str] = Field(
        default_factory=lambda: list(DEFAULT_INTERPRETER_REQUIREMENTS),
        description="Packages the interpreter service needs inside the boundary",
    )


class TEEConfig(BaseModel):
    """Isolation backend configuration."""

    container_engine: Literal["auto", "docker", "podman"] = Field(
        default="auto",
        description="Container engine used by container and VM isolation",
    )
    base_image: str = Field(default="python:3.12-slim", description="Base image for containers")
    vm_runtime: str = Field(
        default="kata-runtime",
        description="OCI runtime providing VM isolation",
    )
    container_python: str = Field(
        default="python",
        description="Python executable inside container and VM boundaries",
    )
    pids_limit: int = Field(default=100, description="Process limit inside containers", ge=1)
    use_namespaces: bool = Field(
        default=True,
        description="Use unprivileged network and mount namespaces for process isolation when available",
    )


class RuntimeConfig(BaseModel):
    """Plugin runtime configuration."""

    health_check_attempts: int = Field(default=20, description="Interpreter health checks", ge=1)
    health_check_backoff: float = Field(
        default=0.25, description="Seconds between health checks", gt=0
    )
    request_timeout: float | None = Field(
        default=None,
        description="Per-request timeout in seconds (None uses the TEE timeout)",
    )


class RegistryConfig(BaseModel):
    """Registry storage configuration."""

    db_path: Path = Field(
        default=DEFAULT_HOME / "registry.db",
        description="SQLite database path",
    )
    credential_key: str | None = Field(
        default=None,
        description="Base64 AES-256 key for encrypting credentials at rest",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    format: str = Field(default="%(asctime)s %(levelname)s %(name)s: %(message)s")


class ForgeConfig(BaseModel):
    """Root configuration schema for agentforge."""

    compiler: CompilerConfig = Field(default_factory=CompilerConfig)
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    interpreter: InterpreterConfig = Field(default_factory=InterpreterConfig)
    tee: TEEConfig = Field(default_factory=TEEConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
