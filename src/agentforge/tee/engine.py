"""Container engine detection and client factory.

Container and VM isolation talk to Docker or Podman through the ``docker``
SDK; Podman exposes a Docker-compatible API socket.

Detection order:
1. Explicit engine from configuration (``tee.container_engine``)
2. CONTAINER_HOST / DOCKER_HOST environment variable
3. Docker default socket
4. Podman user or system socket
"""

import logging
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import docker
from docker.errors import DockerException

logger = logging.getLogger(__name__)


@dataclass
class EngineInfo:
    """Information about the connected container engine."""

    name: str  # "docker" or "podman"
    runtimes: set[str] = field(default_factory=set)

    def supports_runtime(self, runtime: str) -> bool:
        return runtime in self.runtimes


def _podman_socket_candidates() -> list[Path]:
    candidates: list[Path] = []
    if platform.system() == "Darwin":
        machine_dir = Path.home() / ".local/share/containers/podman/machine"
        if machine_dir.is_dir():
            candidates.extend(sorted(machine_dir.glob("*/podman.sock")))
        candidates.append(machine_dir / "podman.sock")
    if hasattr(os, "getuid"):
        candidates.append(Path(f"/run/user/{os.getuid()}/podman/podman.sock"))
    candidates.append(Path("/run/podman/podman.sock"))
    return candidates


def find_podman_socket() -> str | None:
    """Return the Podman API socket URI, if one exists."""
    for sock in _podman_socket_candidates():
        if sock.exists():
            logger.debug("Found Podman socket: %s", sock)
            return f"unix://{sock}"
    return None


def detect_engine(client: Any) -> EngineInfo:
    """Identify the engine behind a docker client and its OCI runtimes."""
    try:
        version_info = client.version()
    except DockerException:
        version_info = {}

    names = [c.get("Name", "") for c in version_info.get("Components", [])]
    names.append(version_info.get("Platform", {}).get("Name", ""))
    engine = "podman" if any("podman" in n.lower() for n in names) else "docker"

    try:
        runtimes = set(client.info().get("Runtimes", {}))
    except DockerException:
        runtimes = set()
    return EngineInfo(name=engine, runtimes=runtimes)


def _connect(base_url: str | None) -> Any:
    client = docker.DockerClient(base_url=base_url) if base_url else docker.from_env()
    client.ping()
    return client


def get_container_client(engine: str | None = None) -> tuple[Any, EngineInfo]:
    """Connect to a container engine.

    Args:
        engine: "docker", "podman", or "auto"/None for auto-detection

    Returns:
        Tuple of (DockerClient, EngineInfo)

    Raises:
        ConnectionError: If no container engine is reachable
    """
    if engine == "auto":
        engine = None

    if engine in (None, "docker"):
        host = os.environ.get("CONTAINER_HOST") or os.environ.get("DOCKER_HOST")
        try:
            client = _connect(host)
        except DockerException as e:
            if engine == "docker":
                raise ConnectionError(f"Failed to connect to Docker daemon: {e}") from e
            logger.debug("Docker not reachable (%s), trying Podman", e)
        else:
            info = detect_engine(client)
            logger.info("Connected to %s%s", info.name, f" via {host}" if host else "")
            return client, info

    socket_uri = find_podman_socket()
    if socket_uri is None:
        raise ConnectionError(
            "No container engine found. Install Docker or Podman, "
            "or set CONTAINER_HOST / DOCKER_HOST."
        )
    try:
        client = _connect(socket_uri)
    except DockerException as e:
        raise ConnectionError(f"Failed to connect to Podman at {socket_uri}: {e}") from e

    info = detect_engine(client)
    info.name = "podman"
    logger.info("Connected to Podman at %s", socket_uri)
    return client, info
