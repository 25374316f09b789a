"""Bundled ``{{token}}`` templates for the generated container and agent files."""

from __future__ import annotations

import re
from collections.abc import Mapping
from importlib import resources as importlib_resources
from typing import Any

from ralph_loop.constants import TEMPLATE_TOKEN_PATTERN
from ralph_loop.models import TemplateError

TEMPLATE_PACKAGE_DIR = "assets"
BLOCK_LINE_PATTERN = re.compile(r"[ \t]*\{\{\s*([A-Za-z0-9_]+)\s*\}\}[ \t]*")


def read_template(name: str) -> str:
    resource = importlib_resources.files("ralph_loop").joinpath(TEMPLATE_PACKAGE_DIR).joinpath(*name.split("/"))
    try:
        return resource.read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError) as exc:
        raise TemplateError(f"bundled template '{name}' was not found") from exc


def template_tokens(text: str) -> list[str]:
    return sorted({match.group(1).strip() for match in TEMPLATE_TOKEN_PATTERN.finditer(text)})


def render_text(text: str, values: Mapping[str, Any], *, source: str = "<string>") -> str:
    """Substitute ``{{token}}`` placeholders in a single pass.

    A token alone on its line is a block: its value replaces the whole line
    verbatim, and an empty value removes the line.
    """
    missing = [token for token in template_tokens(text) if token not in values]
    if missing:
        raise TemplateError(f"template '{source}' has no value for token(s): {', '.join(missing)}")

    def _replace_block(match: re.Match[str]) -> str:
        value = str(values[match.group(1).strip()])
        if not value:
            return ""
        return value if value.endswith("\n") else f"{value}\n"

    def _replace_token(match: re.Match[str]) -> str:
        return str(values[match.group(1).strip()])

    pieces: list[str] = []
    for line in text.splitlines(keepends=True):
        block = BLOCK_LINE_PATTERN.fullmatch(line.rstrip("\n"))
        if block is not None:
            pieces.append(_replace_block(block))
        else:
            pieces.append(TEMPLATE_TOKEN_PATTERN.sub(_replace_token, line))
    return "".join(pieces)


def render_template(name: str, values: Mapping[str, Any]) -> str:
    """Render the bundled template ``name`` (e.g. ``"skills/prd/SKILL.md"``)."""
    return render_text(read_template(name), values, source=name)
