"""Tests for TEE construction and engine detection."""

from unittest.mock import MagicMock, patch

import pytest
from docker.errors import DockerException

from agentforge.config.schema import TEEConfig
from agentforge.spec.models import IsolationLevel, TEESpec
from agentforge.tee.base import TEEState, sanitize_path
from agentforge.tee.container import ContainerTEE
from agentforge.tee.engine import detect_engine, get_container_client
from agentforge.tee.factory import create_tee
from agentforge.tee.process import ProcessTEE
from agentforge.tee.vm import VMTEE


def test_create_process_tee():
    tee = create_tee(TEESpec())

    assert isinstance(tee, ProcessTEE)
    assert tee.state == TEEState.CREATED


def test_create_container_tee():
    tee = create_tee(TEESpec(isolation_level=IsolationLevel.CONTAINER), client=MagicMock())

    assert type(tee) is ContainerTEE


def test_create_vm_tee_with_config_runtime():
    tee = create_tee(
        TEESpec(isolation_level=IsolationLevel.VM),
        TEEConfig(vm_runtime="kata-fc"),
        client=MagicMock(),
    )

    assert isinstance(tee, VMTEE)
    assert tee.runtime == "kata-fc"


def test_names_are_unique():
    assert create_tee(TEESpec()).name != create_tee(TEESpec()).name


@pytest.mark.parametrize(
    "path,expected",
    [("a.txt", "a.txt"), ("/abs/b.txt", "abs/b.txt"), ("dir\\c.txt", "dir/c.txt")],
)
def test_sanitize_path(path, expected):
    assert sanitize_path(path) == expected


@pytest.mark.parametrize("path", ["", ".", "../x", "a/../../b"])
def test_sanitize_path_rejects(path):
    with pytest.raises(ValueError):
        sanitize_path(path)


def test_detect_podman():
    client = MagicMock()
    client.version.return_value = {"Components": [{"Name": "Podman Engine"}]}
    client.info.return_value = {"Runtimes": {"crun": {}}}

    info = detect_engine(client)

    assert info.name == "podman"
    assert info.supports_runtime("crun")
    assert not info.supports_runtime("kata-runtime")


def test_detect_docker():
    client = MagicMock()
    client.version.return_value = {"Platform": {"Name": "Docker Engine - Community"}}
    client.info.return_value = {}

    assert detect_engine(client).name == "docker"


def test_no_engine_reachable():
    with (
        patch("agentforge.tee.engine._connect", side_effect=DockerException("down")),
        patch("agentforge.tee.engine.find_podman_socket", return_value=None),
    ):
        with pytest.raises(ConnectionError, match="No container engine"):
            get_container_client("auto")


def test_explicit_docker_does_not_fall_back():
    with patch("agentforge.tee.engine._connect", side_effect=DockerException("down")):
        with pytest.raises(ConnectionError, match="Docker daemon"):
            get_container_client("docker")
