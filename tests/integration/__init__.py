"""Integration tests for agentforge.

These run real subprocesses and, where available, the Go toolchain:

- Process runtime: a generated bundle served inside a ProcessTEE
- Compiled artifact: compile, load and run a real shared library

Run them with:
    pytest tests/integration/
    pytest -m "not toolchain"   # skip tests that need Go
"""
