"""VM-level isolation: a hardened container under a VM-backed OCI runtime."""

from __future__ import annotations

import asyncio
import logging

from agentforge.errors import TEEStartError
from agentforge.spec.models import IsolationLevel
from agentforge.tee.container import ContainerTEE

logger = logging.getLogger(__name__)


class VMTEE(ContainerTEE):
    """Container TEE whose runtime boots a lightweight VM (e.g. Kata Containers)."""

    isolation_level = IsolationLevel.VM

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        if self.runtime is None:
            self.runtime = self.config.vm_runtime

    async def _start(self) -> None:
        engine = await asyncio.to_thread(lambda: self.engine)
        if not engine.supports_runtime(self.runtime):
            raise TEEStartError(
                f"VM runtime '{self.runtime}' is not registered with {engine.name} "
                f"(available: {', '.join(sorted(engine.runtimes)) or 'none'})"
            )
        logger.debug("Starting %s under runtime %s", self.name, self.runtime)
        await super()._start()
