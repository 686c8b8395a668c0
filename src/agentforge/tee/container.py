"""Container-level isolation via the docker SDK (Docker or Podman).

Each TEE is one long-running hardened container (no network unless allowed,
read-only root filesystem unless filesystem access is allowed, all
capabilities dropped, memory/CPU/pids limits) with a dedicated volume
mounted as its working directory. Commands run through ``exec`` under
``timeout -s KILL``.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import math
import shlex
import shutil
import tarfile
import tempfile
import textwrap
import time
from pathlib import Path
from typing import Any

from docker.errors import DockerException, ImageNotFound, NotFound

from agentforge.errors import ExecutionTimeout, ResourceExceeded, TEEStartError, TEEStateError
from agentforge.spec.models import IsolationLevel
from agentforge.tee.base import ExecResult, TrustedExecutionEnvironment
from agentforge.tee.engine import EngineInfo, detect_engine, get_container_client

logger = logging.getLogger(__name__)

WORKDIR = "/workspace"
EXEC_PID_FILE = "/tmp/agentforge-exec.pid"
SERVICE_PID_FILE = "/tmp/agentforge-service.pid"
SERVICE_LOG_FILE = "/tmp/agentforge-service.log"
KILLED_EXIT_CODE = 128 + 9
EXEC_GRACE_SECONDS = 5.0


class ContainerTEE(TrustedExecutionEnvironment):
    """Isolation in a hardened container."""

    isolation_level = IsolationLevel.CONTAINER

    def __init__(self, *args, client: Any = None, runtime: str | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._client = client
        self._engine: EngineInfo | None = None
        self.runtime = runtime
        self.image = self.config.base_image
        self._container: Any = None
        self._volume: Any = None

    @property
    def python_executable(self) -> str:
        return self.config.container_python

    @property
    def workdir(self) -> str:
        return WORKDIR

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client, self._engine = get_container_client(self.config.container_engine)
            except ConnectionError as e:
                raise TEEStartError(str(e)) from e
        return self._client

    @property
    def engine(self) -> EngineInfo:
        """Engine name and OCI runtimes, detected once per TEE."""
        client = self.client
        if self._engine is None:
            self._engine = detect_engine(client)
        return self._engine

    def _generate_dockerfile(self, requirements: list[str]) -> str:
        packages = " ".join(shlex.quote(r) for r in requirements)
        return textwrap.dedent(f"""\
            FROM {self.config.base_image}

            RUN pip install --no-cache-dir {packages}

            WORKDIR {WORKDIR}
        """)

    async def provision(self, requirements: list[str]) -> None:
        """Build (or reuse) an image with the interpreter requirements installed.

        Raises:
            TEEStateError: If the container is already running
            TEEStartError: If the image cannot be built
        """
        if self._container is not None:
            raise TEEStateError(f"TEE {self.name} must be provisioned before start")
        if not requirements:
            return

        dockerfile = self._generate_dockerfile(requirements)
        digest = hashlib.sha256(dockerfile.encode()).hexdigest()[:12]
        tag = f"agentforge-tee:{digest}"

        client = self.client
        try:
            await asyncio.to_thread(client.images.get, tag)
            logger.debug("Reusing provisioned image %s", tag)
        except ImageNotFound:
            logger.info("Building interpreter image %s", tag)
            with tempfile.TemporaryDirectory(prefix="agentforge-image-") as tmpdir:
                (Path(tmpdir) / "Dockerfile").write_text(dockerfile)
                try:
                    await asyncio.to_thread(client.images.build, path=tmpdir, tag=tag, rm=True)
                except DockerException as e:
                    raise TEEStartError(f"Failed to build interpreter image {tag}: {e}") from e
        except DockerException as e:
            raise TEEStartError(f"Failed to inspect image {tag}: {e}") from e
        self.image = tag

    def _run_options(self) -> dict[str, Any]:
        limits = self.limits
        options: dict[str, Any] = {
            "image": self.image,
            "command": ["sleep", "infinity"],
            "name": self.name,
            "detach": True,
            "working_dir": WORKDIR,
            "volumes": {self._volume.name: {"bind": WORKDIR, "mode": "rw"}},
            "tmpfs": {"/tmp": "rw,size=64m"},
            "network_mode": "bridge" if self.spec.network_access else "none",
            "mem_limit": f"{limits.memory_mb}m",
            "memswap_limit": f"{limits.memory_mb}m",
            "nano_cpus": int(limits.cpu_cores * 1_000_000_000),
            "pids_limit": self.config.pids_limit,
            "cap_drop": ["ALL"],
            "security_opt": ["no-new-privileges"],
            "read_only": not self.spec.filesystem_access,
            "environment": self._base_env(),
            "labels": {"agentforge.tee": self.name},
        }
        if self.runtime:
            options["runtime"] = self.runtime
        return options

    async def _start(self) -> None:
        client = self.client
        try:
            self._volume = await asyncio.to_thread(
                client.volumes.create, name=f"{self.name}-workspace"
            )
            self._container = await asyncio.to_thread(client.containers.run, **self._run_options())
        except DockerException as e:
            await self._remove()
            raise TEEStartError(f"Failed to start container {self.name}: {e}") from e
        logger.debug("Container %s running image %s", self.name, self.image)

    async def _stop(self) -> None:
        await self._remove()

    async def _remove(self) -> None:
        if self._container is not None:
            try:
                await asyncio.to_thread(self._container.remove, force=True)
            except NotFound:
                pass
            except DockerException as e:
                logger.warning("Failed to remove container %s: %s", self.name, e)
            self._container = None
        if self._volume is not None:
            try:
                await asyncio.to_thread(self._volume.remove, force=True)
            except NotFound:
                pass
            except DockerException as e:
                logger.warning("Failed to remove volume of %s: %s", self.name, e)
            self._volume = None

    def _exec(self, argv: list[str], **kwargs: Any) -> Any:
        if self._container is None:
            raise TEEStateError(f"TEE {self.name} has no container")
        return self._container.exec_run(argv, workdir=WORKDIR, **kwargs)

    async def _kill_exec(self) -> None:
        kill = f"kill -KILL -- -$(cat {EXEC_PID_FILE}) 2>/dev/null || kill -KILL $(cat {EXEC_PID_FILE})"
        try:
            await asyncio.to_thread(self._exec, ["sh", "-c", kill])
        except DockerException as e:
            logger.warning("Failed to kill command in %s: %s", self.name, e)

    async def _execute(self, argv: list[str], timeout: float, env: dict[str, str]) -> ExecResult:
        seconds = max(1, math.ceil(timeout))
        wrapped = [
            "sh",
            "-c",
            f'echo $$ > {EXEC_PID_FILE}; exec "$@"',
            "sh",
            "timeout",
            "-s",
            "KILL",
            str(seconds),
            *argv,
        ]
        start = time.monotonic()
        try:
            exec_result = await asyncio.wait_for(
                asyncio.to_thread(self._exec, wrapped, demux=True, environment=env or None),
                timeout=seconds + EXEC_GRACE_SECONDS,
            )
        except TimeoutError:
            await self._kill_exec()
            raise ExecutionTimeout(timeout) from None
        except asyncio.CancelledError:
            await self._kill_exec()
            raise
        except DockerException as e:
            raise TEEStateError(f"Exec failed in {self.name}: {e}") from e

        duration = time.monotonic() - start
        stdout, stderr = exec_result.output or (None, None)
        result = ExecResult(
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
            exit_code=exec_result.exit_code,
            duration=duration,
        )
        if result.exit_code == KILLED_EXIT_CODE:
            if duration >= seconds:
                raise ExecutionTimeout(timeout, diagnostics=result.stderr or None)
            raise ResourceExceeded(
                f"Memory limit of {self.limits.memory_mb}MB exceeded",
                resource="memory",
                limit=self.limits.memory_mb,
                diagnostics=result.stderr or None,
            )
        return result

    async def _launch(self, argv: list[str], env: dict[str, str]) -> None:
        command = " ".join(shlex.quote(a) for a in argv)
        script = f"echo $$ > {SERVICE_PID_FILE}; exec {command} > {SERVICE_LOG_FILE} 2>&1"
        try:
            await asyncio.to_thread(
                self._exec, ["sh", "-c", script], detach=True, environment=env or None
            )
        except DockerException as e:
            raise TEEStartError(f"Failed to launch service in {self.name}: {e}") from e

    async def service_alive(self) -> bool:
        if self._container is None:
            return False
        check = f"test -f {SERVICE_PID_FILE} && kill -0 $(cat {SERVICE_PID_FILE})"
        try:
            result = await asyncio.to_thread(self._exec, ["sh", "-c", check])
        except DockerException:
            return False
        return result.exit_code == 0

    async def service_logs(self) -> str:
        if self._container is None:
            return ""
        try:
            result = await asyncio.to_thread(self._exec, ["cat", SERVICE_LOG_FILE])
        except DockerException as e:
            return f"<service log unavailable: {e}>"
        return (result.output or b"").decode("utf-8", errors="replace")

    async def _copy_in(self, src: Path, dest: str) -> None:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            tar.add(str(src), arcname=dest)
        try:
            await asyncio.to_thread(self._container.put_archive, WORKDIR, buffer.getvalue())
        except DockerException as e:
            raise TEEStateError(f"Copy into {self.name} failed: {e}") from e

    async def _copy_out(self, src: str, dest: Path) -> None:
        try:
            stream, _ = await asyncio.to_thread(self._container.get_archive, f"{WORKDIR}/{src}")
            data = await asyncio.to_thread(lambda: b"".join(stream))
        except NotFound as e:
            raise FileNotFoundError(f"{src} does not exist in TEE {self.name}") from e
        except DockerException as e:
            raise TEEStateError(f"Copy out of {self.name} failed: {e}") from e

        with tempfile.TemporaryDirectory(prefix="agentforge-copy-") as tmpdir:
            with tarfile.open(fileobj=io.BytesIO(data)) as tar:
                tar.extractall(tmpdir, filter="data")
            extracted = Path(tmpdir) / Path(src).name
            if extracted.is_dir():
                shutil.copytree(extracted, dest, dirs_exist_ok=True)
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(extracted, dest)
