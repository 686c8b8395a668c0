"""Target platforms for plugin artifacts."""

from __future__ import annotations

import platform as _platform
import re
import sys
from dataclasses import dataclass

from agentforge.spec.models import PluginSpec

_OS_ALIASES = {
    "linux": "linux",
    "darwin": "darwin",
    "mac": "darwin",
    "macos": "darwin",
    "osx": "darwin",
    "windows": "windows",
    "win": "windows",
    "win32": "windows",
}

_ARCH_ALIASES = {
    "amd64": "amd64",
    "x86_64": "amd64",
    "x64": "amd64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "386": "386",
    "i386": "386",
    "i686": "386",
}

_EXTENSIONS = {"linux": "so", "darwin": "dylib", "windows": "dll"}


@dataclass(frozen=True)
class TargetPlatform:
    """An (os, arch) pair in Go's GOOS/GOARCH vocabulary."""

    os: str
    arch: str

    def __str__(self) -> str:
        return f"{self.os}/{self.arch}"

    @classmethod
    def host(cls) -> TargetPlatform:
        os_name = "windows" if sys.platform.startswith("win") else sys.platform
        if os_name.startswith("linux"):
            os_name = "linux"
        arch = _ARCH_ALIASES.get(_platform.machine().lower(), _platform.machine().lower())
        return cls(os=_OS_ALIASES.get(os_name, os_name), arch=arch)

    @classmethod
    def parse(cls, value: str) -> TargetPlatform:
        """Parse ``os[/arch]``; the host architecture fills a missing arch.

        Raises:
            ValueError: If the OS or architecture is unsupported
        """
        os_part, _, arch_part = value.strip().lower().partition("/")
        os_name = _OS_ALIASES.get(os_part)
        if os_name is None:
            raise ValueError(f"Unsupported target OS '{os_part}'")
        arch = _ARCH_ALIASES.get(arch_part) if arch_part else cls.host().arch
        if arch is None:
            raise ValueError(f"Unsupported target architecture '{arch_part}'")
        return cls(os=os_name, arch=arch)

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self.os]

    def artifact_name(self, spec: PluginSpec) -> str:
        raw = f"agent_{spec.id}_{spec.version}"
        return f"{re.sub(r'[^A-Za-z0-9._-]', '_', raw)}.{self.extension}"

    def go_env(self) -> dict[str, str]:
        return {"GOOS": self.os, "GOARCH": self.arch, "CGO_ENABLED": "1"}
