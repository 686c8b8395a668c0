"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from agentforge.config.schema import ForgeConfig
from agentforge.spec.models import (
    ParameterSpec,
    PluginSpec,
    PromptSpec,
    ResourceLimits,
    ResourceSpec,
    TEESpec,
    ToolSpec,
)


@pytest.fixture
def default_config() -> ForgeConfig:
    """Provide a default configuration for tests."""
    return ForgeConfig()


@pytest.fixture
def forge_config(tmp_path: Path) -> ForgeConfig:
    """Configuration with all writable locations under tmp_path."""
    config = ForgeConfig()
    config.compiler.output_dir = tmp_path / "build"
    config.registry.db_path = tmp_path / "registry.db"
    config.runtime.health_check_backoff = 0.2
    return config


@pytest.fixture
def echo_spec() -> PluginSpec:
    """A single-tool plugin that echoes its input."""
    return PluginSpec(
        id="echo-agent",
        name="echo",
        description="Echoes its input",
        tools=[
            ToolSpec(
                name="echo",
                description="Return the text unchanged",
                parameters=[ParameterSpec(name="text")],
                implementation="return text",
            )
        ],
        tee=TEESpec(limits=ResourceLimits(memory_mb=1024, timeout_sec=30)),
    )


@pytest.fixture
def sample_spec() -> PluginSpec:
    """A plugin with tools, resources and prompts."""
    return PluginSpec(
        id="sample-agent",
        name="sample",
        version="1.2.3",
        kind="sequential",
        tools=[
            ToolSpec(
                name="upper",
                parameters=[ParameterSpec(name="text")],
                implementation="return text.upper()",
            ),
            ToolSpec(
                name="exclaim",
                parameters=[
                    ParameterSpec(name="text"),
                    ParameterSpec(name="count", type="integer", required=False, default=1),
                ],
                implementation="return text + '!' * count",
            ),
        ],
        resources=[
            ResourceSpec(name="greeting", content="hello"),
            ResourceSpec(name="settings", type="json", content='{"temperature": 0.2}'),
            ResourceSpec(name="blob", type="binary", content="AAEC/w==", encoding="base64"),
        ],
        prompts=[PromptSpec(name="system", content="You are {{role}}.", variables=["role"])],
    )
