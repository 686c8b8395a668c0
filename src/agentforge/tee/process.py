"""Process-level isolation.

Commands run as child processes in their own process group with a private
temporary working directory and rlimits for memory and CPU. When ``unshare``
works on the host, network access is removed with an unprivileged network
namespace, and host home directories are hidden behind empty read-only
mounts in a private mount namespace. Python processes additionally load the
interpreter guard.
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib.metadata
import inspect
import logging
import math
import os
import resource
import shlex
import shutil
import signal
import sys
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

from agentforge.errors import (
    ExecutionTimeout,
    ResourceExceeded,
    TEEExecError,
    TEEStartError,
    TEEStateError,
)
from agentforge.spec.models import IsolationLevel, canonical_package_name
from agentforge.tee import guard
from agentforge.tee.base import ExecResult, TrustedExecutionEnvironment

logger = logging.getLogger(__name__)

UNSHARE_BASE = ["unshare", "--user", "--map-root-user"]
HIDDEN_ROOTS = ("/home", "/root", "/mnt", "/media", "/srv")
SERVICE_LOG = "service.log"
STOP_GRACE_SECONDS = 5.0

_namespace_support: dict[str, bool] = {}


async def _succeeds(argv: list[str]) -> bool:
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return False
    return await process.wait() == 0


async def unshare_available() -> bool:
    """Whether unprivileged network namespaces work on this host (cached)."""
    if "net" not in _namespace_support:
        _namespace_support["net"] = shutil.which("unshare") is not None and await _succeeds(
            [*UNSHARE_BASE, "--net", "--", "true"]
        )
        logger.debug("Unprivileged network namespaces available: %s", _namespace_support["net"])
    return _namespace_support["net"]


async def mount_namespace_available() -> bool:
    """Whether a private mount namespace can mount tmpfs on this host (cached)."""
    if "mount" not in _namespace_support:
        supported = False
        if shutil.which("unshare") is not None and shutil.which("mount") is not None:
            with tempfile.TemporaryDirectory(prefix="agentforge-ns-") as target:
                mount = ["mount", "-t", "tmpfs", "-o", "ro", "tmpfs", target]
                supported = await _succeeds([*UNSHARE_BASE, "--mount", "--", *mount])
        _namespace_support["mount"] = supported
        logger.debug("Unprivileged mount namespaces available: %s", supported)
    return _namespace_support["mount"]


def hidden_paths(keep: list[str | Path]) -> list[str]:
    """Host directories to hide, minus any that contain a path in ``keep``.

    The current user's home is hidden along with ``HIDDEN_ROOTS``. Nested
    candidates are dropped once their parent is hidden.
    """
    kept = [Path(p).resolve() for p in keep if p]
    candidates = sorted({Path(p).resolve() for p in (*HIDDEN_ROOTS, Path.home())})
    hidden: list[Path] = []
    for path in candidates:
        if path == Path("/") or not path.is_dir():
            continue
        if any(k == path or path in k.parents for k in kept):
            continue
        if any(parent in path.parents for parent in hidden):
            continue
        hidden.append(path)
    return [str(p) for p in hidden]


def _kill_group(process: asyncio.subprocess.Process, sig: int = signal.SIGKILL) -> None:
    with contextlib.suppress(ProcessLookupError):
        os.killpg(process.pid, sig)


class ProcessTEE(TrustedExecutionEnvironment):
    """Isolation through OS process boundaries and rlimits."""

    isolation_level = IsolationLevel.PROCESS

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._workdir: Path | None = None
        self._isolate_network = False
        self._hidden: list[str] = []
        self._service: asyncio.subprocess.Process | None = None
        self._current: asyncio.subprocess.Process | None = None

    @property
    def python_executable(self) -> str:
        return sys.executable

    @property
    def workdir(self) -> str:
        if self._workdir is None:
            raise TEEStateError(f"TEE {self.name} has no working directory yet")
        return str(self._workdir)

    async def provision(self, requirements: list[str]) -> None:
        """Check that the host interpreter already satisfies the requirements.

        Process isolation shares the host interpreter, so nothing is installed.

        Raises:
            TEEStartError: If a required distribution is not installed
        """
        missing = []
        for req in requirements:
            name = canonical_package_name(req)
            if name is None:
                continue
            try:
                importlib.metadata.version(name)
            except importlib.metadata.PackageNotFoundError:
                missing.append(req)
        if missing:
            raise TEEStartError(
                "Process isolation uses the host interpreter, which lacks: " + ", ".join(missing)
            )

    async def _start(self) -> None:
        try:
            self._workdir = Path(tempfile.mkdtemp(prefix="agentforge-tee-"))
            (self._workdir / ".tmp").mkdir()
            (self._workdir / "sitecustomize.py").write_text(inspect.getsource(guard))
        except OSError as e:
            raise TEEStartError(f"Cannot create TEE working directory: {e}") from e

        if not self.config.use_namespaces:
            return
        if not self.spec.network_access:
            self._isolate_network = await unshare_available()
            if not self._isolate_network:
                logger.warning(
                    "Network namespaces unavailable; network denial for %s relies on the "
                    "interpreter guard only",
                    self.name,
                )
        if not self.spec.filesystem_access:
            if await mount_namespace_available():
                self._hidden = hidden_paths(self._interpreter_paths())
            else:
                logger.warning(
                    "Mount namespaces unavailable; filesystem denial for %s covers Python "
                    "processes only",
                    self.name,
                )

    def _interpreter_paths(self) -> list[str]:
        return [
            self.workdir,
            sys.prefix,
            sys.base_prefix,
            sys.exec_prefix,
            str(Path(sys.executable).resolve().parent),
            *sys.path,
        ]

    async def _stop(self) -> None:
        if self._current is not None:
            _kill_group(self._current)
        await self._terminate_service()
        if self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)

    async def _terminate_service(self) -> None:
        service = self._service
        if service is None or service.returncode is not None:
            return
        _kill_group(service, signal.SIGTERM)
        try:
            await asyncio.wait_for(service.wait(), timeout=STOP_GRACE_SECONDS)
        except TimeoutError:
            logger.warning("Service in %s ignored SIGTERM, killing", self.name)
            _kill_group(service)
            await service.wait()

    def _command(self, argv: list[str]) -> list[str]:
        flags = []
        if self._isolate_network:
            flags.append("--net")
        if self._hidden:
            flags.append("--mount")
        if not flags:
            return argv
        prefix = [*UNSHARE_BASE, *flags, "--"]
        if not self._hidden:
            return [*prefix, *argv]
        mounts = " && ".join(
            f"mount -t tmpfs -o ro tmpfs {shlex.quote(path)}" for path in self._hidden
        )
        return [*prefix, "sh", "-c", f'{mounts} && exec "$@"', "sh", *argv]

    def _environment(self, extra: dict[str, str]) -> dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": self.workdir,
            "TMPDIR": str(Path(self.workdir) / ".tmp"),
            "PYTHONPATH": self.workdir,
            **self._base_env(),
        }
        for key in ("LANG", "LC_ALL", "VIRTUAL_ENV"):
            if key in os.environ:
                env[key] = os.environ[key]
        env.update(extra)
        return env

    def _preexec(self, cpu_seconds: int | None) -> Callable[[], None]:
        memory = self.limits.memory_mb * 1024 * 1024

        def apply_limits() -> None:
            resource.setrlimit(resource.RLIMIT_AS, (memory, memory))
            if cpu_seconds is not None:
                resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))

        return apply_limits

    async def _execute(self, argv: list[str], timeout: float, env: dict[str, str]) -> ExecResult:
        cpu_seconds = max(1, math.ceil(self.limits.cpu_cores * timeout))
        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command(argv),
                cwd=self.workdir,
                env=self._environment(env),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                preexec_fn=self._preexec(cpu_seconds),
            )
        except FileNotFoundError as e:
            return ExecResult(stdout="", stderr=str(e), exit_code=127, duration=0.0)
        except OSError as e:
            raise TEEExecError(f"Cannot spawn {argv[0]} in {self.name}: {e}") from e

        self._current = process
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            _kill_group(process)
            await process.wait()
            logger.warning("Command in %s exceeded %ss, killed", self.name, timeout)
            raise ExecutionTimeout(timeout) from None
        except asyncio.CancelledError:
            _kill_group(process)
            await process.wait()
            raise
        finally:
            self._current = None

        result = ExecResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode,
            duration=time.monotonic() - start,
        )
        self._check_limits(result, cpu_seconds)
        return result

    def _check_limits(self, result: ExecResult, cpu_seconds: int) -> None:
        if result.exit_code in (-signal.SIGXCPU, 128 + signal.SIGXCPU):
            raise ResourceExceeded(
                f"CPU limit of {cpu_seconds}s exceeded",
                resource="cpu",
                limit=cpu_seconds,
                diagnostics=result.stderr or None,
            )
        if result.exit_code != 0 and "MemoryError" in result.stderr:
            raise ResourceExceeded(
                f"Memory limit of {self.limits.memory_mb}MB exceeded",
                resource="memory",
                limit=self.limits.memory_mb,
                diagnostics=result.stderr,
            )

    async def _launch(self, argv: list[str], env: dict[str, str]) -> None:
        try:
            with open(Path(self.workdir) / SERVICE_LOG, "ab") as log:
                self._service = await asyncio.create_subprocess_exec(
                    *self._command(argv),
                    cwd=self.workdir,
                    env=self._environment(env),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                    preexec_fn=self._preexec(None),
                )
        except OSError as e:
            raise TEEStartError(f"Cannot launch {argv[0]} in {self.name}: {e}") from e
        logger.debug("Launched service pid %s in %s", self._service.pid, self.name)

    async def service_alive(self) -> bool:
        return self._service is not None and self._service.returncode is None

    async def service_logs(self) -> str:
        if self._workdir is None:
            return ""
        path = self._workdir / SERVICE_LOG
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8", errors="replace")

    async def _copy_in(self, src: Path, dest: str) -> None:
        target = Path(self.workdir) / dest
        if src.is_dir():
            shutil.copytree(src, target, dirs_exist_ok=True)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, target)

    async def _copy_out(self, src: str, dest: Path) -> None:
        source = Path(self.workdir) / src
        if not source.exists():
            raise FileNotFoundError(f"{src} does not exist in TEE {self.name}")
        if source.is_dir():
            shutil.copytree(source, dest, dirs_exist_ok=True)
        else:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, dest)
