"""Tests for process-level isolation."""

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from agentforge.errors import (
    ExecutionTimeout,
    ResourceExceeded,
    TEEBusyError,
    TEEExecError,
    TEEStartError,
    TEEStateError,
)
from agentforge.spec.models import ResourceLimits, TEESpec
from agentforge.tee.base import TEEState
from agentforge.tee.process import ProcessTEE, hidden_paths

pytestmark = pytest.mark.skipif(sys.platform != "linux", reason="process isolation targets Linux")


@pytest.fixture
async def tee():
    """A running process TEE, stopped after the test."""
    instance = ProcessTEE(TEESpec(limits=ResourceLimits(memory_mb=256, timeout_sec=10)))
    await instance.start()
    yield instance
    await instance.stop()


@pytest.mark.asyncio
async def test_execute_captures_output(tee):
    result = await tee.execute("sh", ["-c", "echo out; echo err >&2; exit 3"])

    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.exit_code == 3
    assert not result.ok


@pytest.mark.asyncio
async def test_runs_in_private_workdir(tee):
    result = await tee.execute("pwd")

    assert Path(result.stdout.strip()).resolve() == Path(tee.workdir).resolve()
    assert Path(tee.workdir).name.startswith("agentforge-tee-")


@pytest.mark.asyncio
async def test_missing_command(tee):
    result = await tee.execute("definitely-not-a-command-xyz")

    assert result.exit_code == 127


@pytest.mark.asyncio
async def test_configured_timeout_kills_command():
    async with ProcessTEE(TEESpec(limits=ResourceLimits(timeout_sec=1))) as tee:
        start = time.monotonic()
        with pytest.raises(ExecutionTimeout) as exc_info:
            await tee.execute("sh", ["-c", "echo $$ > pid; exec sleep 5"])
        elapsed = time.monotonic() - start
        pid = int((Path(tee.workdir) / "pid").read_text())

    assert elapsed < 2
    assert exc_info.value.limit == 1
    assert isinstance(exc_info.value, ResourceExceeded)
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_per_call_timeout_overrides_limit(tee):
    start = time.monotonic()

    with pytest.raises(ExecutionTimeout) as exc_info:
        await tee.execute("sleep", ["5"], timeout=1)

    assert time.monotonic() - start < 2
    assert exc_info.value.limit == 1


@pytest.mark.asyncio
async def test_oversized_argument_is_staged_error(tee):
    with pytest.raises(TEEExecError) as exc_info:
        await tee.execute("echo", ["y" * 200_000])

    assert str(exc_info.value).startswith("[isolation]")
    assert isinstance(exc_info.value.__cause__, OSError)


@pytest.mark.asyncio
async def test_memory_limit(tee):
    with pytest.raises(ResourceExceeded) as exc_info:
        await tee.execute(sys.executable, ["-c", "x = bytearray(1024 ** 3)"])

    assert exc_info.value.resource == "memory"


@pytest.mark.asyncio
async def test_executions_are_serialized(tee):
    start = time.monotonic()

    await asyncio.gather(
        tee.execute("sleep", ["0.5"]),
        tee.execute("sleep", ["0.5"]),
    )

    assert time.monotonic() - start >= 1.0


@pytest.mark.asyncio
async def test_busy_without_wait(tee):
    running = asyncio.create_task(tee.execute("sleep", ["0.5"]))
    await asyncio.sleep(0.1)

    assert tee.busy
    with pytest.raises(TEEBusyError):
        await tee.execute("true", wait=False)
    await running


@pytest.mark.asyncio
async def test_copy_round_trip(tee, tmp_path: Path):
    src = tmp_path / "in.txt"
    src.write_text("payload")

    await tee.copy_file_in(src, "data/in.txt")
    await tee.execute("cp", ["data/in.txt", "out.txt"])
    await tee.copy_file_out("out.txt", tmp_path / "back" / "out.txt")

    assert (tmp_path / "back" / "out.txt").read_text() == "payload"


@pytest.mark.asyncio
async def test_copy_rejects_escaping_paths(tee, tmp_path: Path):
    src = tmp_path / "in.txt"
    src.write_text("x")

    with pytest.raises(ValueError):
        await tee.copy_file_in(src, "../escape.txt")


@pytest.mark.asyncio
async def test_copy_out_missing(tee, tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        await tee.copy_file_out("missing.txt", tmp_path / "x")


@pytest.mark.asyncio
async def test_guard_blocks_reads_outside_workdir(tee, tmp_path: Path):
    secret = tmp_path / "secret.txt"
    secret.write_text("hidden")

    result = await tee.execute(sys.executable, ["-c", f"open({str(secret)!r}).read()"])

    assert result.exit_code == 1
    assert "filesystem access denied" in result.stderr


@pytest.mark.asyncio
async def test_guard_blocks_network(tee):
    code = "import socket; s = socket.socket(); s.connect(('127.0.0.1', 9))"

    result = await tee.execute(sys.executable, ["-c", code])

    assert result.exit_code == 1
    assert "network access denied" in result.stderr


@pytest.mark.asyncio
async def test_python_can_use_workdir(tee):
    code = "open('note.txt', 'w').write('ok'); print(open('note.txt').read())"

    result = await tee.execute(sys.executable, ["-c", code])

    assert result.stdout.strip() == "ok"


@pytest.mark.asyncio
async def test_launch_single_service(tee):
    code = "import time; print('up', flush=True); time.sleep(30)"

    await tee.launch(sys.executable, ["-c", code])

    assert await tee.service_alive()
    with pytest.raises(TEEStateError, match="already runs"):
        await tee.launch(sys.executable, ["-c", code])

    for _ in range(50):
        if "up" in await tee.service_logs():
            break
        await asyncio.sleep(0.1)
    assert "up" in await tee.service_logs()


@pytest.mark.asyncio
async def test_stop_releases_everything():
    tee = ProcessTEE(TEESpec())
    await tee.start()
    await tee.launch("sleep", ["30"])
    workdir = Path(tee.workdir)

    await tee.stop()
    await tee.stop()

    assert tee.state == TEEState.STOPPED
    assert not workdir.exists()
    assert not await tee.service_alive()
    with pytest.raises(TEEStateError):
        await tee.execute("true")
    with pytest.raises(TEEStartError):
        await tee.start()


@pytest.mark.asyncio
async def test_execute_before_start():
    with pytest.raises(TEEStateError):
        await ProcessTEE(TEESpec()).execute("true")


@pytest.mark.asyncio
async def test_start_is_idempotent(tee):
    workdir = tee.workdir

    await tee.start()

    assert tee.workdir == workdir


@pytest.mark.asyncio
async def test_provision_checks_host_packages():
    tee = ProcessTEE(TEESpec())

    await tee.provision(["pydantic>=2", "PyYAML"])
    with pytest.raises(TEEStartError, match="no-such-distribution-xyz"):
        await tee.provision(["no-such-distribution-xyz==1.0"])


@pytest.mark.asyncio
async def test_async_context_manager():
    async with ProcessTEE(TEESpec()) as tee:
        assert tee.state == TEEState.RUNNING
    assert tee.state == TEEState.STOPPED


def test_hidden_paths_spare_interpreter_and_nested(tmp_path: Path, monkeypatch):
    home, srv, venv = tmp_path / "home", tmp_path / "srv", tmp_path / "venv"
    (home / "alice").mkdir(parents=True)
    srv.mkdir()
    (venv / "lib").mkdir(parents=True)
    monkeypatch.setattr(
        "agentforge.tee.process.HIDDEN_ROOTS",
        (str(home), str(srv), str(venv), str(tmp_path / "missing")),
    )
    monkeypatch.setenv("HOME", str(home / "alice"))

    hidden = hidden_paths([venv / "lib", ""])

    assert hidden == [str(home.resolve()), str(srv.resolve())]


def test_command_wraps_namespaces():
    tee = ProcessTEE(TEESpec())
    tee._isolate_network = True
    tee._hidden = ["/home", "/srv"]

    argv = tee._command(["cat", "notes.txt"])

    assert argv[:6] == ["unshare", "--user", "--map-root-user", "--net", "--mount", "--"]
    assert argv[6:8] == ["sh", "-c"]
    assert argv[8] == (
        'mount -t tmpfs -o ro tmpfs /home && mount -t tmpfs -o ro tmpfs /srv && exec "$@"'
    )
    assert argv[9:] == ["sh", "cat", "notes.txt"]


def test_command_without_namespaces_is_unchanged():
    assert ProcessTEE(TEESpec())._command(["true"]) == ["true"]


@pytest.mark.asyncio
async def test_host_directories_hidden_from_commands(tee):
    if not tee._hidden:
        pytest.skip("mount namespaces unavailable or nothing to hide")

    result = await tee.execute("ls", ["-A", tee._hidden[0]])

    assert result.exit_code == 0
    assert result.stdout == ""


@pytest.mark.asyncio
async def test_filesystem_access_leaves_host_visible():
    spec = TEESpec(filesystem_access=True, network_access=True)
    async with ProcessTEE(spec) as tee:
        assert tee._command(["true"]) == ["true"]
