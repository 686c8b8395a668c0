"""agentforge - compile declarative agents into sandboxed native plugins.

An agent is described once as a :class:`~agentforge.spec.models.PluginSpec`,
compiled into a loadable shared library that embeds a Python agent service,
and run inside a process, container or VM isolation boundary.

Key modules:

- :mod:`agentforge.spec` - PluginSpec / ToolSpec / TEESpec data model
- :mod:`agentforge.compiler` - Template engine, resource embedder, code generator, build orchestrator
- :mod:`agentforge.tee` - Trusted execution environments (process, container, VM)
- :mod:`agentforge.interpreter` - Embedded agent service shipped inside every plugin
- :mod:`agentforge.runtime` - Artifact loader and plugin lifecycle
- :mod:`agentforge.registry` - SQLite-backed key-document registry
"""

__version__ = "0.2.0"
