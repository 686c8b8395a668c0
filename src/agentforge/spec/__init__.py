"""Declarative plugin description: what gets compiled."""

from agentforge.spec.loader import load_plugin_spec, save_plugin_spec
from agentforge.spec.models import (
    IsolationLevel,
    ParameterSpec,
    PluginKind,
    PluginSpec,
    PromptSpec,
    ResourceLimits,
    ResourceSpec,
    TEESpec,
    ToolSpec,
    check_spec,
)
from agentforge.spec.ui import UIConversion, spec_from_ui_config

__all__ = [
    "IsolationLevel",
    "ParameterSpec",
    "PluginKind",
    "PluginSpec",
    "PromptSpec",
    "ResourceLimits",
    "ResourceSpec",
    "TEESpec",
    "ToolSpec",
    "UIConversion",
    "check_spec",
    "load_plugin_spec",
    "save_plugin_spec",
    "spec_from_ui_config",
]
