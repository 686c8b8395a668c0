"""Agent interpreter service.

This file is copied verbatim into every plugin bundle as ``agent_service.py``
and runs inside the isolation boundary. It depends only on the standard
library, FastAPI, uvicorn, httpx and pydantic, never on agentforge itself.

Modes:
    serve    Run the HTTP API on a Unix socket.
    request  Send one request to a running service and print the JSON reply.
             The body comes from --data or from a --data-file that is deleted
             after reading. Exits with status 2 when the service cannot be
             reached.
"""

import argparse
import asyncio
import base64
import importlib.util
import inspect
import json
import logging
import os
import sqlite3
import sys
import time
import uuid
from pathlib import Path
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

logger = logging.getLogger("agent_service")

TOOLS_DIR = Path(__file__).resolve().parent / "tools"

TRANSPORT_EXIT_CODE = 2
CONNECT_TIMEOUT = 5.0


class CreateAgentRequest(BaseModel):
    agent_id: str
    manifest: dict[str, Any]
    resources: dict[str, str] = Field(default_factory=dict, description="Base64 payloads")
    prompts: dict[str, str] = Field(default_factory=dict)


class RunAgentRequest(BaseModel):
    input: Any = ""
    session_id: str | None = None
    tool: str | None = None


def coerce(value: Any, type_tag: str) -> Any:
    """Coerce a value to a parameter type tag."""
    if value is None:
        return None
    if type_tag == "string":
        if isinstance(value, str):
            return value
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)
    if type_tag == "integer":
        if isinstance(value, bool):
            return int(value)
        return int(value) if not isinstance(value, str) else int(value.strip())
    if type_tag == "number":
        return float(value)
    if type_tag == "boolean":
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes", "on")
        return bool(value)
    if type_tag in ("array", "object") and isinstance(value, str):
        parsed = json.loads(value)
        expected = list if type_tag == "array" else dict
        if not isinstance(parsed, expected):
            raise ValueError(f"expected a JSON {type_tag}")
        return parsed
    return value


def bind_arguments(parameters: list[dict[str, Any]], value: Any) -> dict[str, Any]:
    """Map an input value onto a tool's parameters.

    A mapping whose keys are all parameter names is used as keyword
    arguments; anything else binds to the first required parameter.
    """
    if not parameters:
        return {}
    names = {p["name"] for p in parameters}
    if isinstance(value, dict) and value and set(value) <= names:
        raw = dict(value)
    else:
        target = next((p for p in parameters if p.get("required", True)), parameters[0])
        raw = {target["name"]: value}

    kwargs = {}
    for param in parameters:
        name = param["name"]
        if name in raw:
            try:
                kwargs[name] = coerce(raw[name], param.get("type", "string"))
            except (TypeError, ValueError) as e:
                raise ValueError(f"parameter '{name}': cannot convert to {param.get('type')}: {e}") from e
        elif param.get("required", True):
            raise ValueError(f"missing required parameter '{name}'")
    return kwargs


class Tool:
    def __init__(self, definition: dict[str, Any], func: Any) -> None:
        self.name = definition["name"]
        self.parameters = definition.get("parameters", [])
        self.func = func

    async def __call__(self, value: Any) -> Any:
        kwargs = bind_arguments(self.parameters, value)
        if inspect.iscoroutinefunction(self.func):
            return await self.func(**kwargs)
        return await asyncio.to_thread(self.func, **kwargs)


def load_tool(
    definition: dict[str, Any],
    tools_dir: Path,
    resources: dict[str, bytes],
    prompts: dict[str, str],
) -> Tool:
    name = definition["name"]
    path = tools_dir / f"{name}.py"
    module_spec = importlib.util.spec_from_file_location(f"agent_tools.{name}", path)
    if module_spec is None or module_spec.loader is None:
        raise ImportError(f"cannot load tool module {path}")
    module = importlib.util.module_from_spec(module_spec)
    module.RESOURCES = resources
    module.PROMPTS = prompts
    module_spec.loader.exec_module(module)

    func = getattr(module, name, None) or getattr(module, "run", None)
    if not callable(func):
        raise ImportError(f"tool module {path} defines neither '{name}' nor 'run'")
    return Tool(definition, func)


class Agent:
    """One agent instance created from a bundle manifest."""

    def __init__(
        self,
        agent_id: str,
        manifest: dict[str, Any],
        resources: dict[str, bytes],
        prompts: dict[str, str],
        tools_dir: Path,
    ) -> None:
        self.agent_id = agent_id
        self.name = manifest.get("name", agent_id)
        self.kind = manifest.get("kind", "llm")
        self.max_iterations = int(manifest.get("max_iterations", 3))
        self.resources = resources
        self.prompts = prompts
        self.tools = {
            d["name"]: load_tool(d, tools_dir, resources, prompts)
            for d in manifest.get("tools", [])
        }

    async def run(self, value: Any, tool: str | None = None) -> Any:
        if tool is not None:
            if tool not in self.tools:
                raise KeyError(f"unknown tool '{tool}'")
            return await self.tools[tool](value)
        if not self.tools:
            return value

        tools = list(self.tools.values())
        if self.kind == "sequential":
            for t in tools:
                value = await t(value)
            return value
        if self.kind == "parallel":
            results = await asyncio.gather(*(t(value) for t in tools))
            return dict(zip(self.tools, results))
        if self.kind == "loop":
            for _ in range(self.max_iterations):
                result = await tools[0](value)
                if result == value:
                    break
                value = result
            return value
        return await tools[0](value)


class SessionStore:
    """Per-session request history in SQLite."""

    def __init__(self, path: str) -> None:
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                input TEXT,
                output TEXT,
                created_at REAL NOT NULL
            )
            """
        )
        self.conn.commit()

    def append(self, session_id: str, agent_id: str, value: Any, result: Any) -> None:
        self.conn.execute(
            "INSERT INTO history (session_id, agent_id, input, output, created_at) VALUES (?, ?, ?, ?, ?)",
            (
                session_id,
                agent_id,
                json.dumps(jsonable_encoder(value)),
                json.dumps(jsonable_encoder(result)),
                time.time(),
            ),
        )
        self.conn.commit()

    def history(self, session_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT agent_id, input, output, created_at FROM history WHERE session_id = ? ORDER BY id",
            (session_id,),
        ).fetchall()
        return [
            {"agent_id": r[0], "input": json.loads(r[1]), "output": json.loads(r[2]), "created_at": r[3]}
            for r in rows
        ]


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"status": "error", "error": message, **extra}
    )


def create_app(tools_dir: Path = TOOLS_DIR, storage: str | None = None) -> FastAPI:
    app = FastAPI(title="agent interpreter")
    agents: dict[str, Agent] = {}
    store = SessionStore(storage) if storage else None

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "healthy", "agents": list(agents)}

    @app.post("/create_agent")
    async def create_agent(request: CreateAgentRequest) -> Any:
        try:
            resources = {k: base64.b64decode(v) for k, v in request.resources.items()}
            agent = Agent(request.agent_id, request.manifest, resources, request.prompts, tools_dir)
        except Exception as e:
            logger.exception("Failed to create agent %s", request.agent_id)
            return _error(f"{type(e).__name__}: {e}", 500)
        agents[request.agent_id] = agent
        logger.info("Created agent %s (%s, %d tools)", agent.agent_id, agent.kind, len(agent.tools))
        return {"status": "success", "agent_id": agent.agent_id}

    @app.post("/run_agent/{agent_id}")
    async def run_agent(agent_id: str, request: RunAgentRequest) -> Any:
        agent = agents.get(agent_id)
        if agent is None:
            return _error(f"agent '{agent_id}' not found", 404)
        session_id = request.session_id or str(uuid.uuid4())
        try:
            result = await agent.run(request.input, tool=request.tool)
        except MemoryError as e:
            logger.warning("Agent %s ran out of memory", agent_id)
            return _error(f"MemoryError: {e}", 507, kind="resource", resource="memory")
        except Exception as e:
            logger.warning("Agent %s failed: %s", agent_id, e)
            return _error(f"{type(e).__name__}: {e}", 500)
        if store is not None:
            store.append(session_id, agent_id, request.input, result)
        return {
            "status": "success",
            "response": jsonable_encoder(result),
            "session_id": session_id,
        }

    @app.get("/sessions/{session_id}")
    async def session_history(session_id: str) -> Any:
        if store is None:
            return _error("session storage is not enabled", 404)
        return {"status": "success", "session_id": session_id, "history": store.history(session_id)}

    return app


def serve(args: argparse.Namespace) -> int:
    if os.path.exists(args.socket):
        os.unlink(args.socket)
    app = create_app(storage=args.storage)
    uvicorn.run(app, uds=args.socket, log_level=args.log_level.lower())
    return 0


def read_payload(args: argparse.Namespace) -> Any:
    """Request body from --data-file (removed once read) or --data."""
    if args.data_file:
        path = Path(args.data_file)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        finally:
            path.unlink(missing_ok=True)
    return json.loads(args.data) if args.data else None


def request(args: argparse.Namespace) -> int:
    payload = read_payload(args)
    transport = httpx.HTTPTransport(uds=args.socket)
    # No read timeout by default: the caller's wall-clock limit governs
    timeout = httpx.Timeout(args.timeout, connect=CONNECT_TIMEOUT)
    try:
        with httpx.Client(transport=transport, base_url="http://agent", timeout=timeout) as client:
            response = client.request(args.method.upper(), args.path, json=payload)
    except httpx.HTTPError as e:
        print(f"transport error: {e}", file=sys.stderr)
        return TRANSPORT_EXIT_CODE
    sys.stdout.write(response.text)
    sys.stdout.flush()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="agent_service")
    sub = parser.add_subparsers(dest="mode", required=True)

    serve_parser = sub.add_parser("serve")
    serve_parser.add_argument("--socket", default="agent.sock")
    serve_parser.add_argument("--storage", default=None)
    serve_parser.add_argument("--log-level", default="WARNING")

    request_parser = sub.add_parser("request")
    request_parser.add_argument("method")
    request_parser.add_argument("path")
    request_parser.add_argument("--socket", default="agent.sock")
    request_parser.add_argument("--data", default=None)
    request_parser.add_argument("--data-file", default=None)
    request_parser.add_argument("--timeout", type=float, default=None)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(args, "log_level", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.mode == "serve":
        return serve(args)
    return request(args)


if __name__ == "__main__":
    sys.exit(main())
