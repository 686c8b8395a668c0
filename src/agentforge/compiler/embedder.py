"""Byte-level embedding of resources into Go source."""

import hashlib
import re
from dataclasses import dataclass

BYTES_PER_LINE = 16

_DECLARATION_PATTERN = re.compile(r"var\s+([A-Za-z_][A-Za-z0-9_]*)\s*=\s*\[\]byte\{(.*?)\}", re.S)
_BYTE_PATTERN = re.compile(r"0x([0-9a-fA-F]{2})")


@dataclass(frozen=True)
class EmbeddedResource:
    """A resource rendered as a Go byte-slice declaration."""

    name: str
    identifier: str
    declaration: str
    size: int


def go_identifier(name: str, prefix: str = "resource") -> str:
    """Deterministic Go identifier for a resource name.

    Sanitizing alone is not injective ("a-b" and "a_b" collide), so a short
    digest of the original name is appended.
    """
    sanitized = re.sub(r"[^A-Za-z0-9_]", "_", name) or "unnamed"
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:8]
    return f"{prefix}_{sanitized}_{digest}"


def embed(name: str, payload: bytes | str, prefix: str = "resource") -> EmbeddedResource:
    """Render a payload as ``var <ident> = []byte{...}``."""
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    identifier = go_identifier(name, prefix)

    if not data:
        declaration = f"var {identifier} = []byte{{}}"
    else:
        lines = []
        for start in range(0, len(data), BYTES_PER_LINE):
            chunk = data[start : start + BYTES_PER_LINE]
            lines.append("\t" + ", ".join(f"0x{b:02x}" for b in chunk) + ",")
        declaration = f"var {identifier} = []byte{{\n" + "\n".join(lines) + "\n}"

    return EmbeddedResource(name=name, identifier=identifier, declaration=declaration, size=len(data))


def decode(fragment: str) -> bytes:
    """Parse a declaration produced by :func:`embed` back into bytes.

    Raises:
        ValueError: If the fragment holds no byte-slice declaration
    """
    match = _DECLARATION_PATTERN.search(fragment)
    if match is None:
        raise ValueError("fragment does not contain a []byte declaration")
    return bytes(int(h, 16) for h in _BYTE_PATTERN.findall(match.group(2)))


def go_string(value: str) -> str:
    """Quote a value as a Go interpreted string literal."""
    out = ['"']
    for ch in value:
        code = ord(ch)
        if ch == "\\":
            out.append("\\\\")
        elif ch == '"':
            out.append('\\"')
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\r":
            out.append("\\r")
        elif ch == "\t":
            out.append("\\t")
        elif code < 0x20 or code == 0x7F:
            out.append(f"\\x{code:02x}")
        else:
            out.append(ch)
    out.append('"')
    return "".join(out)
