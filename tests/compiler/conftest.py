"""Fixtures for compiler tests."""

import stat
from pathlib import Path

import pytest

SUCCESS = """
out=""
while [ $# -gt 0 ]; do
    if [ "$1" = "-o" ]; then out="$2"; fi
    shift
done
echo "building $GOOS/$GOARCH"
echo "cc=$CC" >&2
printf 'ELF' > "$out"
printf 'header' > "${out%.*}.h"
"""


@pytest.fixture
def fake_go(tmp_path: Path):
    """Factory writing a shell script that stands in for the go binary."""

    def _make(body: str = SUCCESS) -> str:
        path = tmp_path / "fake-go"
        path.write_text(
            "#!/bin/sh\n"
            'if [ "$1" = "version" ]; then echo "go version go1.22.0 linux/amd64"; exit 0; fi\n'
            + body
        )
        path.chmod(path.stat().st_mode | stat.S_IXUSR)
        return str(path)

    return _make
