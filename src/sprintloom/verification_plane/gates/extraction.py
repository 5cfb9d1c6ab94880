"""Locate the structured (YAML/JSON) part of worker-written text.

Workers frequently wrap a document in markdown fences or lead with a sentence
of narrative before the data. These helpers find the data without guessing at
its meaning.
"""

from __future__ import annotations

import re
from typing import Final

_FENCE_RE: Final[re.Pattern[str]] = re.compile(
    r"^[ \t]*```[ \t]*(?P<lang>[A-Za-z0-9_+-]*)[ \t]*\n(?P<body>.*?)^[ \t]*```[ \t]*$",
    re.MULTILINE | re.DOTALL,
)
_KEY_LINE_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*:(\s|$)")
_STRUCTURED_LANGS: Final[frozenset[str]] = frozenset({"", "yaml", "yml", "json"})


def has_code_fence(text: str) -> bool:
    return _FENCE_RE.search(text) is not None


def strip_code_fences(text: str) -> str | None:
    """Return the body of the first YAML/JSON (or untagged) fence, or ``None``."""

    for match in _FENCE_RE.finditer(text):
        if match.group("lang").lower() in _STRUCTURED_LANGS:
            return match.group("body")
    return None


def is_structured_line(line: str) -> bool:
    stripped = line.strip()
    if not stripped:
        return False
    if stripped.startswith(("{", "[", "- ", "---", "#")) or stripped == "-":
        return True
    return _KEY_LINE_RE.match(stripped) is not None


def leading_prose(text: str) -> str:
    """Non-blank lines that precede the first structured line."""

    lines = text.splitlines()
    for index, line in enumerate(lines):
        if is_structured_line(line):
            return "\n".join(item for item in lines[:index] if item.strip())
    return ""


def strip_leading_prose(text: str) -> str:
    lines = text.splitlines(keepends=True)
    for index, line in enumerate(lines):
        if is_structured_line(line):
            return "".join(lines[index:])
    return text


def extract_structured(text: str) -> str | None:
    """Best-effort structured body: fenced content first, then text after any prose.

    Returns ``None`` when nothing changes, so callers can tell "already clean"
    from "recovered".
    """

    fenced = strip_code_fences(text)
    if fenced is not None:
        return fenced if fenced.endswith("\n") else f"{fenced}\n"
    if leading_prose(text):
        return strip_leading_prose(text)
    return None


__all__ = [
    "extract_structured",
    "has_code_fence",
    "is_structured_line",
    "leading_prose",
    "strip_code_fences",
    "strip_leading_prose",
]
