"""Interpreter guard for process-level isolation.

The process TEE writes this module into its working directory as
``sitecustomize.py``, so every Python interpreter started inside the
boundary installs the audit hook before running user code. It denies inet
connections when network access is off, and file access outside the working
directory (reads of the interpreter's own installation excepted) when
filesystem access is off.

This file must only depend on the standard library.
"""

import os
import socket
import sys

_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_CREAT | os.O_APPEND | os.O_TRUNC
_SYSTEM_READ_ROOTS = ("/dev", "/etc", "/usr", "/lib", "/lib64", "/bin", "/sys/devices/system/cpu")
_WRITABLE_DEVICES = ("/dev/null", "/dev/tty", "/dev/stdout", "/dev/stderr")


def _within(path, root):
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


class Guard:
    """Audit hook enforcing the boundary policy."""

    def __init__(self, workdir, network=False, filesystem=False, read_roots=None):
        self.workdir = os.path.realpath(workdir)
        self.network = network
        self.filesystem = filesystem
        if read_roots is None:
            read_roots = [
                *sys.path,
                sys.prefix,
                sys.base_prefix,
                sys.exec_prefix,
                "/proc/self",
                *_SYSTEM_READ_ROOTS,
            ]
        self.read_roots = [self.workdir] + sorted(
            {os.path.realpath(p) for p in read_roots if p}
        )

    def allowed(self, path, write):
        if self.filesystem:
            return True
        real = os.path.realpath(path)
        if _within(real, self.workdir):
            return True
        if write:
            return real in _WRITABLE_DEVICES
        return any(_within(real, root) for root in self.read_roots)

    def _check_path(self, path, write):
        if path is None or isinstance(path, int):
            return
        path = os.fsdecode(os.fspath(path))
        if not self.allowed(path, write):
            raise PermissionError(f"filesystem access denied: {path}")

    def __call__(self, event, args):
        if event == "open":
            path, mode, flags = args
            if isinstance(mode, str):
                write = any(c in mode for c in "wax+")
            else:
                write = bool((flags or 0) & _WRITE_FLAGS)
            self._check_path(path, write)
        elif event in ("os.listdir", "os.scandir"):
            self._check_path(args[0] if args else None, False)
        elif event == "sqlite3.connect":
            database = args[0] if args else None
            if database not in (None, ":memory:", b":memory:", ""):
                self._check_path(database, True)
        elif event == "socket.connect" and not self.network:
            sock = args[0]
            if sock.family in (socket.AF_INET, socket.AF_INET6):
                raise PermissionError("network access denied")


def install(workdir, network=False, filesystem=False):
    """Install the guard for the rest of this interpreter's lifetime."""
    if network and filesystem:
        return None
    guard = Guard(workdir, network=network, filesystem=filesystem)
    sys.addaudithook(guard)
    return guard


if __name__ == "sitecustomize" and os.environ.get("AGENTFORGE_WORKDIR"):
    install(
        os.environ["AGENTFORGE_WORKDIR"],
        network=os.environ.get("AGENTFORGE_NETWORK") == "1",
        filesystem=os.environ.get("AGENTFORGE_FILESYSTEM") == "1",
    )
