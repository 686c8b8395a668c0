"""Configuration management for agentforge."""

from agentforge.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config, save_config
from agentforge.config.schema import (
    CompilerConfig,
    ForgeConfig,
    InterpreterConfig,
    LoggingConfig,
    RegistryConfig,
    RuntimeConfig,
    TEEConfig,
    ToolchainConfig,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "CompilerConfig",
    "ConfigError",
    "ForgeConfig",
    "InterpreterConfig",
    "LoggingConfig",
    "RegistryConfig",
    "RuntimeConfig",
    "TEEConfig",
    "ToolchainConfig",
    "load_config",
    "save_config",
]
