"""Request/response models and the client side of the interpreter protocol.

The interpreter service listens on a Unix socket inside the TEE. Requests
reach it by executing the service's ``request`` mode inside the boundary,
so the same transport works for every isolation level, with or without
network access.
"""

from __future__ import annotations

import json
import logging
import tempfile
import uuid
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agentforge.compiler.generator import SERVICE_FILENAME
from agentforge.errors import InterpreterError, InterpreterTransportError, ResourceExceeded
from agentforge.tee.base import TrustedExecutionEnvironment

logger = logging.getLogger(__name__)

SOCKET_NAME = "agent.sock"
STORAGE_NAME = "sessions.db"
TRANSPORT_EXIT_CODE = 2
REQUEST_FILE_PREFIX = ".request-"


class RuntimeOptions(BaseModel):
    """Per-runtime options passed to ``PluginRuntime.initialize``."""

    model_config = ConfigDict(extra="forbid")

    session_storage: bool = Field(
        default=False,
        description="Persist session history inside the boundary",
    )
    env: dict[str, str] = Field(default_factory=dict, description="Extra interpreter environment")
    request_timeout: float | None = Field(default=None, gt=0)
    health_check_attempts: int | None = Field(default=None, ge=1)


class AgentResponse(BaseModel):
    agent_id: str
    session_id: str
    response: Any
    duration: float


class InferenceRequest(BaseModel):
    input: Any
    session_id: str | None = None
    tool: str | None = None


class InferenceResponse(BaseModel):
    agent_id: str
    session_id: str
    output: Any
    tool: str | None = None
    duration: float


class InterpreterClient:
    """Sends protocol requests through ``TEE.execute``."""

    def __init__(
        self,
        tee: TrustedExecutionEnvironment,
        socket: str = SOCKET_NAME,
        timeout: float | None = None,
    ) -> None:
        self.tee = tee
        self.socket = socket
        self.timeout = timeout

    async def call(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send one request and return the decoded JSON body.

        Request bodies are staged as a file inside the boundary, so their size
        is not bound by the argument length limit of ``execute``.

        Raises:
            InterpreterTransportError: If the service is unreachable or replies garbage
            InterpreterError: If the service reports an application error
            ResourceExceeded: If the service reports a resource limit violation
            ExecutionTimeout: If the request outlives its wall-clock limit
        """
        args = [SERVICE_FILENAME, "request", method, path, "--socket", self.socket]
        if payload is not None:
            args += ["--data-file", await self._stage(payload)]
        result = await self.tee.execute(
            self.tee.python_executable,
            args,
            timeout=timeout if timeout is not None else self.timeout,
        )

        if result.exit_code == TRANSPORT_EXIT_CODE:
            raise InterpreterTransportError(
                f"Interpreter unreachable for {method} {path}",
                diagnostics=result.stderr.strip() or None,
            )
        if result.exit_code != 0:
            raise InterpreterTransportError(
                f"Interpreter client exited with code {result.exit_code} for {method} {path}",
                diagnostics=result.stderr.strip() or None,
            )
        try:
            body = json.loads(result.stdout)
        except ValueError as e:
            raise InterpreterTransportError(
                f"Unreadable interpreter reply for {method} {path}",
                diagnostics=result.stdout[:2000] or None,
            ) from e
        if not isinstance(body, dict):
            raise InterpreterTransportError(f"Unexpected interpreter reply for {method} {path}")
        if body.get("status") == "error":
            message = str(body.get("error", "unknown interpreter error"))
            if body.get("kind") == "resource":
                raise self._resource_error(str(body.get("resource", "unknown")), message)
            raise InterpreterError(message)
        return body

    async def _stage(self, payload: dict[str, Any]) -> str:
        name = f"{REQUEST_FILE_PREFIX}{uuid.uuid4().hex}.json"
        with tempfile.TemporaryDirectory(prefix="agentforge-request-") as tmpdir:
            source = Path(tmpdir) / "request.json"
            source.write_text(json.dumps(payload), encoding="utf-8")
            await self.tee.copy_file_in(source, name)
        return name

    def _resource_error(self, resource: str, message: str) -> ResourceExceeded:
        limit = self.tee.limits.memory_mb if resource == "memory" else None
        detail = f" of {limit}MB" if limit is not None else ""
        return ResourceExceeded(
            f"{resource.capitalize()} limit{detail} exceeded inside the interpreter",
            resource=resource,
            limit=limit,
            diagnostics=message,
        )
