"""Compiler: PluginSpec to a native plugin artifact."""

from agentforge.compiler.builder import BuildOrchestrator, BuildResult
from agentforge.compiler.embedder import EmbeddedResource, decode, embed, go_string
from agentforge.compiler.generator import CodeGenerator, SourceTree
from agentforge.compiler.pipeline import CompilationResult, PluginCompiler
from agentforge.compiler.platform import TargetPlatform
from agentforge.compiler.template import load_template, placeholders, render

__all__ = [
    "BuildOrchestrator",
    "BuildResult",
    "CodeGenerator",
    "CompilationResult",
    "EmbeddedResource",
    "PluginCompiler",
    "SourceTree",
    "TargetPlatform",
    "decode",
    "embed",
    "go_string",
    "load_template",
    "placeholders",
    "render",
]
