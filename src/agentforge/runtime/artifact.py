"""Loading compiled plugin artifacts.

An artifact is a C shared library exporting ``AgentID``, ``AgentBundle`` and
``AgentFree``. ``AgentBundle`` returns a JSON document with the manifest
(the PluginSpec), the embedded bundle files, resources and prompts; byte
values are base64 encoded.

Each artifact carries its own Go runtime. Loading several artifacts into one
process works on Linux but is not supported by the Go project; long-lived
hosts should load one artifact per process.
"""

from __future__ import annotations

import base64
import ctypes
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from agentforge.compiler.generator import BUNDLE_DIR, SourceTree
from agentforge.errors import ArtifactLoadError
from agentforge.spec.models import PluginSpec

logger = logging.getLogger(__name__)

_BUNDLE_PREFIX = f"{BUNDLE_DIR}/"


@dataclass
class PluginBundle:
    """Everything a runtime needs from an artifact."""

    spec: PluginSpec
    files: dict[str, bytes] = field(default_factory=dict)
    resources: dict[str, bytes] = field(default_factory=dict)
    prompts: dict[str, str] = field(default_factory=dict)
    source: Path | None = None

    @property
    def agent_id(self) -> str:
        return self.spec.id

    @classmethod
    def from_json(cls, payload: str | bytes, source: Path | None = None) -> PluginBundle:
        """Decode the document returned by ``AgentBundle``.

        Raises:
            ArtifactLoadError: If the document is malformed
        """
        try:
            document: dict[str, Any] = json.loads(payload)
        except ValueError as e:
            raise ArtifactLoadError(f"Artifact returned invalid JSON: {e}") from e
        if "error" in document:
            raise ArtifactLoadError(f"Artifact failed to assemble its bundle: {document['error']}")

        try:
            spec = PluginSpec.model_validate(document["manifest"])
            files = {
                name.removeprefix(_BUNDLE_PREFIX): base64.b64decode(data)
                for name, data in (document.get("files") or {}).items()
            }
            resources = {
                name: base64.b64decode(data)
                for name, data in (document.get("resources") or {}).items()
            }
            prompts = {
                name: base64.b64decode(data).decode("utf-8")
                for name, data in (document.get("prompts") or {}).items()
            }
        except (KeyError, ValueError, ValidationError) as e:
            raise ArtifactLoadError(f"Artifact bundle is malformed: {e}") from e

        return cls(spec=spec, files=files, resources=resources, prompts=prompts, source=source)

    @classmethod
    def from_source_tree(cls, tree: SourceTree) -> PluginBundle:
        """Assemble the bundle straight from a generated tree, without building."""
        files = {}
        if tree.bundle_dir.is_dir():
            for path in sorted(tree.bundle_dir.rglob("*")):
                if path.is_file():
                    files[path.relative_to(tree.bundle_dir).as_posix()] = path.read_bytes()
        return cls(
            spec=tree.spec,
            files=files,
            resources={r.name: r.payload for r in tree.spec.resources},
            prompts={p.name: p.content for p in tree.spec.prompts},
            source=tree.root,
        )

    def stage(self, dest: Path) -> list[Path]:
        """Write the bundle files under ``dest``; returns the top-level entries."""
        top_level: set[Path] = set()
        for name, data in self.files.items():
            path = dest / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            top_level.add(dest / Path(name).parts[0])
        return sorted(top_level)


def _open_library(path: Path) -> ctypes.CDLL:
    try:
        lib = ctypes.CDLL(str(path))
    except OSError as e:
        raise ArtifactLoadError(f"Cannot load artifact {path}: {e}") from e
    try:
        lib.AgentID.restype = ctypes.c_void_p
        lib.AgentBundle.restype = ctypes.c_void_p
        lib.AgentFree.argtypes = [ctypes.c_void_p]
        lib.AgentFree.restype = None
    except AttributeError as e:
        raise ArtifactLoadError(f"{path} does not export the agent ABI: {e}") from e
    return lib


def _take_string(lib: ctypes.CDLL, pointer: int | None) -> bytes:
    if not pointer:
        raise ArtifactLoadError("Artifact returned a null pointer")
    try:
        return ctypes.string_at(pointer)
    finally:
        lib.AgentFree(pointer)


def artifact_id(path: str | Path) -> str:
    """Return the agent id exported by an artifact."""
    lib = _open_library(Path(path))
    return _take_string(lib, lib.AgentID()).decode("utf-8")


def load_artifact(path: str | Path) -> PluginBundle:
    """Load an artifact and decode its bundle.

    Raises:
        ArtifactLoadError: If the library cannot be loaded or decoded
    """
    path = Path(path).resolve()
    lib = _open_library(path)
    bundle = PluginBundle.from_json(_take_string(lib, lib.AgentBundle()), source=path)
    logger.info(
        "Loaded artifact %s (%s, %d bundle files)",
        path.name,
        bundle.spec.build_key,
        len(bundle.files),
    )
    return bundle
