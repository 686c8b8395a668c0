"""Plugin runtime: runs one loaded plugin inside its TEE."""

from __future__ import annotations

import asyncio
import base64
import logging
import tempfile
import time
import uuid
from collections.abc import Callable
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from agentforge.compiler.generator import SERVICE_FILENAME
from agentforge.config.schema import ForgeConfig
from agentforge.errors import (
    AgentForgeError,
    ExecutionTimeout,
    InterpreterTransportError,
    LifecycleError,
    SpecValidationError,
    TEEStartError,
)
from agentforge.registry.store import Registry
from agentforge.runtime.artifact import PluginBundle, load_artifact
from agentforge.runtime.protocol import (
    SOCKET_NAME,
    STORAGE_NAME,
    AgentResponse,
    InferenceRequest,
    InferenceResponse,
    InterpreterClient,
    RuntimeOptions,
)
from agentforge.spec.models import PromptSpec, ResourceSpec, ToolSpec
from agentforge.tee.base import TrustedExecutionEnvironment
from agentforge.tee.factory import create_tee

logger = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT = 10.0
MAX_SESSION_HISTORY = 50

TEEFactory = Callable[..., TrustedExecutionEnvironment]


class RuntimeState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPED = "stopped"


class PluginRuntime:
    """Lifecycle of one plugin: uninitialized, initialized, running, stopped.

    Example:
        >>> async with PluginRuntime.from_artifact("agent_x_1.0.0.so") as runtime:
        ...     reply = await runtime.run_agent("hello")
    """

    def __init__(
        self,
        bundle: PluginBundle,
        *,
        registry: Registry | None = None,
        config: ForgeConfig | None = None,
        tee_factory: TEEFactory = create_tee,
    ) -> None:
        self.bundle = bundle
        self.spec = bundle.spec
        self.registry = registry
        self.config = config or ForgeConfig()
        self.state = RuntimeState.UNINITIALIZED
        self.options = RuntimeOptions()
        self.tools: dict[str, ToolSpec] = {}
        self.resources: dict[str, ResourceSpec] = {}
        self.prompts: dict[str, PromptSpec] = {}
        self.tee: TrustedExecutionEnvironment | None = None
        self._tee_factory = tee_factory
        self._client: InterpreterClient | None = None

    @classmethod
    def from_artifact(cls, path: str | Path, **kwargs: Any) -> PluginRuntime:
        return cls(load_artifact(path), **kwargs)

    @property
    def agent_id(self) -> str:
        return self.spec.id

    def initialize(self, options: RuntimeOptions | dict[str, Any] | None = None) -> None:
        """Validate options, build lookup tables and construct (not start) the TEE.

        Raises:
            LifecycleError: If the runtime was already initialized
            SpecValidationError: If the options are invalid
        """
        if self.state != RuntimeState.UNINITIALIZED:
            raise LifecycleError(f"Cannot initialize plugin runtime in state {self.state}")
        try:
            if isinstance(options, RuntimeOptions):
                self.options = options
            else:
                self.options = RuntimeOptions.model_validate(options or {})
        except ValidationError as e:
            raise SpecValidationError(f"Invalid runtime options: {e}") from e

        self.tools = {t.name: t for t in self.spec.tools}
        self.resources = {r.name: r for r in self.spec.resources}
        self.prompts = {p.name: p for p in self.spec.prompts}
        self.tee = self._new_tee()

        self.state = RuntimeState.INITIALIZED
        self._record_status()
        logger.info("Initialized plugin %s", self.spec.build_key)

    def _new_tee(self) -> TrustedExecutionEnvironment:
        tee = self._tee_factory(self.spec.tee, self.config.tee)
        timeout = self.options.request_timeout or self.config.runtime.request_timeout
        self._client = InterpreterClient(tee, socket=SOCKET_NAME, timeout=timeout)
        return tee

    def _record_status(self) -> None:
        if self.registry is None:
            return
        self.registry.register_agent(
            self.agent_id,
            {
                "name": self.spec.name,
                "version": self.spec.version,
                "kind": str(self.spec.kind),
                "isolation_level": str(self.spec.tee.isolation_level),
                "tools": list(self.tools),
                "status": str(self.state),
                "artifact": str(self.bundle.source) if self.bundle.source else None,
            },
        )

    async def start(self) -> None:
        """Start the TEE and the interpreter service, then create the agent.

        On failure the TEE is stopped and replaced by a fresh instance, so
        ``start`` may be retried.

        Raises:
            LifecycleError: If the runtime is not initialized
            TEEStartError: If the boundary or the interpreter fails to come up
        """
        if self.state != RuntimeState.INITIALIZED:
            raise LifecycleError(f"Cannot start plugin runtime in state {self.state}")

        tee = self.tee
        try:
            await self._boot(tee)
        except asyncio.CancelledError:
            await tee.stop()
            self.tee = self._new_tee()
            raise
        except (AgentForgeError, OSError) as e:
            diagnostics = await self._collect_logs(tee)
            await tee.stop()
            self.tee = self._new_tee()
            logger.error("Plugin %s failed to start: %s", self.spec.build_key, e)
            raise TEEStartError(
                f"Failed to start plugin {self.spec.name}: {e}", diagnostics=diagnostics
            ) from e

        self.state = RuntimeState.RUNNING
        self._record_status()
        logger.info("Plugin %s running in %s", self.spec.build_key, tee)

    async def _boot(self, tee: TrustedExecutionEnvironment) -> None:
        if SERVICE_FILENAME not in self.bundle.files:
            raise TEEStartError("Plugin bundle has no embedded interpreter")
        await tee.provision(self.spec.requirements(self.config.interpreter.requirements))
        await tee.start()
        await self._install_bundle(tee)

        args = [SERVICE_FILENAME, "serve", "--socket", SOCKET_NAME]
        if self.spec.requires_storage or self.options.session_storage:
            args += ["--storage", STORAGE_NAME]
        await tee.launch(tee.python_executable, args, env=self.options.env)

        await self._wait_healthy()
        await self._client.call(
            "POST",
            "/create_agent",
            {
                "agent_id": self.agent_id,
                "manifest": self.spec.model_dump(mode="json"),
                "resources": {
                    name: base64.b64encode(data).decode()
                    for name, data in self.bundle.resources.items()
                },
                "prompts": self.bundle.prompts,
            },
        )

    async def _recover(self) -> None:
        """Replace the TEE after a request outlived its wall-clock limit.

        The timed-out tool may still be running inside the service, so the
        whole boundary is stopped and a fresh one is booted. If that fails
        the runtime drops back to ``initialized``.
        """
        logger.warning("Recreating the TEE of %s after a timed-out request", self.spec.build_key)
        await self.tee.stop()
        tee = self.tee = self._new_tee()
        try:
            await self._boot(tee)
        except (AgentForgeError, OSError) as e:
            await tee.stop()
            self.tee = self._new_tee()
            self.state = RuntimeState.INITIALIZED
            self._record_status()
            logger.error("Plugin %s could not be restarted: %s", self.spec.build_key, e)

    async def _install_bundle(self, tee: TrustedExecutionEnvironment) -> None:
        with tempfile.TemporaryDirectory(prefix="agentforge-bundle-") as staging:
            for entry in self.bundle.stage(Path(staging)):
                await tee.copy_file_in(entry, entry.name)

    async def _wait_healthy(self) -> None:
        attempts = self.options.health_check_attempts or self.config.runtime.health_check_attempts
        backoff = self.config.runtime.health_check_backoff
        for attempt in range(1, attempts + 1):
            if not await self.tee.service_alive():
                raise TEEStartError("Interpreter service exited during startup")
            try:
                await self._client.call("GET", "/health", timeout=HEALTH_CHECK_TIMEOUT)
            except InterpreterTransportError:
                logger.debug("Interpreter not healthy yet (attempt %d/%d)", attempt, attempts)
                await asyncio.sleep(backoff)
            else:
                return
        raise TEEStartError(f"Interpreter service not healthy after {attempts} attempts")

    @staticmethod
    async def _collect_logs(tee: TrustedExecutionEnvironment) -> str | None:
        try:
            return await tee.service_logs() or None
        except AgentForgeError:
            return None

    def _require_running(self) -> None:
        if self.state != RuntimeState.RUNNING:
            raise LifecycleError(f"Plugin runtime is {self.state}, not running")

    async def _run(self, value: Any, session_id: str | None, tool: str | None) -> tuple[Any, str, float]:
        self._require_running()
        session_id = session_id or str(uuid.uuid4())
        payload: dict[str, Any] = {"input": value, "session_id": session_id}
        if tool is not None:
            payload["tool"] = tool

        start = time.monotonic()
        try:
            body = await self._client.call("POST", f"/run_agent/{self.agent_id}", payload)
        except ExecutionTimeout:
            await self._recover()
            raise
        duration = time.monotonic() - start
        if "response" not in body:
            raise InterpreterTransportError(f"Interpreter reply has no response: {body}")

        self._remember(session_id, value, body["response"])
        return body["response"], session_id, duration

    def _remember(self, session_id: str, value: Any, response: Any) -> None:
        if self.registry is None:
            return
        existing = self.registry.get_context(session_id)
        history = existing["context"].get("history", []) if existing else []
        history.append({"input": value, "response": response, "at": time.time()})
        self.registry.store_context(
            session_id,
            self.agent_id,
            {"history": history[-MAX_SESSION_HISTORY:]},
        )

    async def run_agent(self, value: Any, session_id: str | None = None) -> AgentResponse:
        """Run the agent on one input.

        Raises:
            LifecycleError: If the runtime is not running
            InterpreterError: If the interpreter reports an error (message verbatim)
            InterpreterTransportError: If the interpreter cannot be reached
            ResourceExceeded: If the run hit a memory or CPU limit
            ExecutionTimeout: If the run hit the wall-clock limit; the TEE has
                been recreated by the time this is raised
        """
        response, session_id, duration = await self._run(value, session_id, None)
        return AgentResponse(
            agent_id=self.agent_id,
            session_id=session_id,
            response=response,
            duration=duration,
        )

    async def process_inference(self, request: InferenceRequest) -> InferenceResponse:
        """Run one inference request, optionally against a single named tool."""
        output, session_id, duration = await self._run(request.input, request.session_id, request.tool)
        return InferenceResponse(
            agent_id=self.agent_id,
            session_id=session_id,
            output=output,
            tool=request.tool,
            duration=duration,
        )

    def get_resource(self, name: str) -> bytes | None:
        return self.bundle.resources.get(name)

    def get_prompt(self, name: str) -> str | None:
        return self.bundle.prompts.get(name)

    async def stop(self) -> None:
        """Stop the TEE and release the registry handle. Idempotent."""
        if self.state == RuntimeState.STOPPED:
            return
        if self.tee is not None:
            await self.tee.stop()
        self.state = RuntimeState.STOPPED
        if self.registry is not None and not self.registry.closed:
            self._record_status()
        self.registry = None
        logger.info("Stopped plugin %s", self.spec.build_key)

    async def __aenter__(self) -> PluginRuntime:
        if self.state == RuntimeState.UNINITIALIZED:
            self.initialize()
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
