"""Trusted execution environments: isolation boundaries for plugins."""

from agentforge.tee.base import ExecResult, TEEState, TrustedExecutionEnvironment, sanitize_path
from agentforge.tee.container import ContainerTEE
from agentforge.tee.factory import create_tee
from agentforge.tee.process import ProcessTEE
from agentforge.tee.vm import VMTEE

__all__ = [
    "ContainerTEE",
    "ExecResult",
    "ProcessTEE",
    "TEEState",
    "TrustedExecutionEnvironment",
    "VMTEE",
    "create_tee",
    "sanitize_path",
]
