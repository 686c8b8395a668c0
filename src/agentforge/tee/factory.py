"""TEE factory: the only place isolation levels map to implementations."""

from typing import Any

from agentforge.config.schema import TEEConfig
from agentforge.spec.models import IsolationLevel, TEESpec
from agentforge.tee.base import TrustedExecutionEnvironment
from agentforge.tee.container import ContainerTEE
from agentforge.tee.process import ProcessTEE
from agentforge.tee.vm import VMTEE

_BACKENDS: dict[IsolationLevel, type[TrustedExecutionEnvironment]] = {
    IsolationLevel.PROCESS: ProcessTEE,
    IsolationLevel.CONTAINER: ContainerTEE,
    IsolationLevel.VM: VMTEE,
}


def create_tee(
    spec: TEESpec,
    config: TEEConfig | None = None,
    **kwargs: Any,
) -> TrustedExecutionEnvironment:
    """Create an unstarted TEE for an isolation policy.

    Extra keyword arguments go to the backend (e.g. ``client`` for container
    backends).
    """
    backend = _BACKENDS[spec.isolation_level]
    return backend(spec, config, **kwargs)
