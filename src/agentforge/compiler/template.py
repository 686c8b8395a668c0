"""Placeholder substitution for generated sources.

Templates use the ``{{.name}}`` spelling. Substitution is a single pass with
no conditionals or loops; placeholders without a binding render as the empty
string.
"""

import logging
import re
from pathlib import Path
from typing import Any

from agentforge.errors import GenerationError

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"


def placeholders(template_text: str) -> list[str]:
    """List the distinct placeholder names referenced by a template, in order."""
    names: list[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(template_text):
        if match.group(1) not in names:
            names.append(match.group(1))
    return names


def render(template_text: str, bindings: dict[str, Any]) -> str:
    """Substitute every placeholder with ``str(bindings[name])``."""

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in bindings:
            logger.debug("No binding for placeholder '%s', rendering empty", name)
            return ""
        return str(bindings[name])

    return PLACEHOLDER_PATTERN.sub(_substitute, template_text)


def load_template(template_dir: Path | None, name: str) -> str:
    """Read a template file.

    Raises:
        GenerationError: If the template cannot be read
    """
    path = (template_dir or DEFAULT_TEMPLATE_DIR) / name
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise GenerationError(f"Cannot read template {path}: {e}", path=str(path)) from e
