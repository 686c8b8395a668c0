"""Plugin runtime: loads artifacts and runs them inside a TEE."""

from agentforge.runtime.artifact import PluginBundle, artifact_id, load_artifact
from agentforge.runtime.plugin import PluginRuntime, RuntimeState
from agentforge.runtime.protocol import (
    AgentResponse,
    InferenceRequest,
    InferenceResponse,
    InterpreterClient,
    RuntimeOptions,
)

__all__ = [
    "AgentResponse",
    "InferenceRequest",
    "InferenceResponse",
    "InterpreterClient",
    "PluginBundle",
    "PluginRuntime",
    "RuntimeOptions",
    "RuntimeState",
    "artifact_id",
    "load_artifact",
]
