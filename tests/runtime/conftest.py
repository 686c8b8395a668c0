"""Fixtures for runtime tests: an in-process TEE backed by the service app."""

import json
import shutil
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from agentforge.compiler.generator import CodeGenerator
from agentforge.errors import ExecutionTimeout
from agentforge.interpreter.service import create_app
from agentforge.runtime.artifact import PluginBundle
from agentforge.spec.models import IsolationLevel
from agentforge.tee.base import ExecResult, TrustedExecutionEnvironment


class InProcessTEE(TrustedExecutionEnvironment):
    """Answers interpreter requests with a TestClient instead of a subprocess."""

    isolation_level = IsolationLevel.PROCESS

    def __init__(
        self, *args, healthy: bool = True, exits: bool = False, hangs: bool = False, **kwargs
    ):
        super().__init__(*args, **kwargs)
        self.root = Path(tempfile.mkdtemp(prefix="inprocess-tee-"))
        self.healthy = healthy
        self.exits = exits
        self.hangs = hangs
        self.timeouts: list[float] = []
        self.client: TestClient | None = None
        self.provisioned: list[str] | None = None
        self.launched: list[str] | None = None
        self.requests: list[tuple[str, str, dict | None]] = []

    @property
    def python_executable(self) -> str:
        return "python"

    @property
    def workdir(self) -> str:
        return str(self.root)

    async def provision(self, requirements):
        self.provisioned = requirements

    async def service_alive(self):
        return self.client is not None and not self.exits

    async def service_logs(self):
        return "Traceback: service crashed" if self.exits else ""

    async def _start(self):
        pass

    async def _stop(self):
        self.client = None
        shutil.rmtree(self.root, ignore_errors=True)

    async def _launch(self, argv, env):
        self.launched = argv
        storage = None
        if "--storage" in argv:
            storage = str(self.root / argv[argv.index("--storage") + 1])
        self.client = TestClient(create_app(tools_dir=self.root / "tools", storage=storage))

    async def _execute(self, argv, timeout, env):
        _, _, mode, method, path, *rest = argv
        assert mode == "request"
        payload = None
        if "--data-file" in rest:
            data_file = self.root / rest[rest.index("--data-file") + 1]
            payload = json.loads(data_file.read_text())
            data_file.unlink()
        self.requests.append((method, path, payload))
        self.timeouts.append(timeout)
        if self.hangs and path.startswith("/run_agent"):
            raise ExecutionTimeout(timeout)
        if self.client is None or not self.healthy:
            return ExecResult(stdout="", stderr="transport error: refused", exit_code=2, duration=0.0)
        response = self.client.request(method, path, json=payload)
        return ExecResult(stdout=response.text, stderr="", exit_code=0, duration=0.0)

    async def _copy_in(self, src, dest):
        target = self.root / dest
        if src.is_dir():
            shutil.copytree(src, target, dirs_exist_ok=True)
        else:
            shutil.copyfile(src, target)

    async def _copy_out(self, src, dest):
        shutil.copyfile(self.root / src, dest)


@pytest.fixture
def tee_factory():
    """TEE factory that records every instance it creates."""
    created: list[InProcessTEE] = []
    options: dict = {}

    def factory(spec, config=None):
        tee = InProcessTEE(spec, config, **options)
        created.append(tee)
        return tee

    factory.created = created
    factory.options = options
    return factory


@pytest.fixture
def make_bundle(forge_config):
    """Build a PluginBundle straight from a generated source tree."""

    def _make(spec) -> PluginBundle:
        tree = CodeGenerator.from_config(forge_config).generate(spec)
        return PluginBundle.from_source_tree(tree)

    return _make
