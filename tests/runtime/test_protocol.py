"""Tests for the interpreter client."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentforge.errors import InterpreterError, InterpreterTransportError, ResourceExceeded
from agentforge.runtime.protocol import InterpreterClient
from agentforge.spec.models import ResourceLimits
from agentforge.tee.base import ExecResult


def _tee(stdout: str = "", exit_code: int = 0, stderr: str = "") -> MagicMock:
    tee = MagicMock()
    tee.python_executable = "python3"
    tee.limits = ResourceLimits(memory_mb=512)
    tee.staged = {}

    async def copy_file_in(src, dest):
        tee.staged[dest] = Path(src).read_text(encoding="utf-8")

    tee.copy_file_in = AsyncMock(side_effect=copy_file_in)
    tee.execute = AsyncMock(
        return_value=ExecResult(stdout=stdout, stderr=stderr, exit_code=exit_code, duration=0.1)
    )
    return tee


@pytest.mark.asyncio
async def test_call_builds_request_command():
    tee = _tee(json.dumps({"status": "success", "response": 1}))
    client = InterpreterClient(tee, socket="s.sock", timeout=7)

    body = await client.call("POST", "/run_agent/a", {"input": "x"})

    assert body["response"] == 1
    command, args = tee.execute.call_args.args
    assert command == "python3"
    assert args[:6] == ["agent_service.py", "request", "POST", "/run_agent/a", "--socket", "s.sock"]
    data_file = args[args.index("--data-file") + 1]
    assert data_file.startswith(".request-")
    assert json.loads(tee.staged[data_file]) == {"input": "x"}
    assert "--data" not in args
    assert tee.execute.call_args.kwargs["timeout"] == 7


@pytest.mark.asyncio
async def test_large_payload_stays_out_of_argv():
    tee = _tee(json.dumps({"status": "success", "response": "ok"}))
    payload = {"input": "y" * 200_000}

    await InterpreterClient(tee).call("POST", "/run_agent/a", payload)

    args = tee.execute.call_args.args[1]
    assert max(len(arg) for arg in args) < 1024
    (staged,) = tee.staged.values()
    assert json.loads(staged) == payload


@pytest.mark.asyncio
async def test_each_call_stages_a_distinct_file():
    tee = _tee(json.dumps({"status": "success"}))
    client = InterpreterClient(tee)

    await client.call("POST", "/run_agent/a", {"input": 1})
    await client.call("POST", "/run_agent/a", {"input": 2})

    assert len(tee.staged) == 2


@pytest.mark.asyncio
async def test_per_call_timeout_overrides_default():
    tee = _tee(json.dumps({"status": "healthy"}))

    await InterpreterClient(tee, timeout=30).call("GET", "/health", timeout=2)

    assert tee.execute.call_args.kwargs["timeout"] == 2
    assert "--data-file" not in tee.execute.call_args.args[1]
    tee.copy_file_in.assert_not_called()


@pytest.mark.asyncio
async def test_no_client_timeout_defers_to_tee_limit():
    tee = _tee(json.dumps({"status": "healthy"}))

    await InterpreterClient(tee).call("GET", "/health")

    assert tee.execute.call_args.kwargs["timeout"] is None
    assert "--timeout" not in tee.execute.call_args.args[1]


@pytest.mark.asyncio
@pytest.mark.parametrize("exit_code", [2, 1])
async def test_nonzero_exit_is_transport_error(exit_code):
    tee = _tee(exit_code=exit_code, stderr="transport error: refused")

    with pytest.raises(InterpreterTransportError) as exc_info:
        await InterpreterClient(tee).call("GET", "/health")

    assert exc_info.value.diagnostics == "transport error: refused"


@pytest.mark.asyncio
@pytest.mark.parametrize("stdout", ["not json", "[1, 2]"])
async def test_bad_reply_is_transport_error(stdout):
    with pytest.raises(InterpreterTransportError):
        await InterpreterClient(_tee(stdout)).call("GET", "/health")


@pytest.mark.asyncio
async def test_error_status_is_interpreter_error():
    tee = _tee(json.dumps({"status": "error", "error": "KeyError: 'x'"}))

    with pytest.raises(InterpreterError) as exc_info:
        await InterpreterClient(tee).call("POST", "/run_agent/a", {})

    assert exc_info.value.message == "KeyError: 'x'"


@pytest.mark.asyncio
async def test_memory_error_reply_is_resource_exceeded():
    reply = {
        "status": "error",
        "error": "MemoryError: ",
        "kind": "resource",
        "resource": "memory",
    }
    tee = _tee(json.dumps(reply))

    with pytest.raises(ResourceExceeded) as exc_info:
        await InterpreterClient(tee).call("POST", "/run_agent/a", {"input": "x"})

    assert exc_info.value.resource == "memory"
    assert exc_info.value.limit == 512
    assert exc_info.value.diagnostics == "MemoryError: "
    assert not isinstance(exc_info.value, InterpreterError)
