"""Output rendering for the sprintloom CLI.

File: src/sprintloom/ui/render.py

Purpose
- Provide a thin rendering layer for CLI output.
- Keep JSON output deterministic and plain-text output stable for scripting.
"""

from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING, Any, TextIO

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence


class CLIRenderer:
    """Thin plain-text renderer writing to one stream."""

    def __init__(self, *, stream: TextIO | None = None, verbose: bool = False) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout

    def _print(self, text: str = "") -> None:
        print(text, file=self._stream)

    def kv(self, key: str, value: object) -> None:
        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def section(self, title: str) -> None:
        self._print(f"\n{title}")

    def warning(self, text: str) -> None:
        self._print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table; nothing is printed for zero rows."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[object]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._print(f"  {_pad(list(headers))}")
        self._print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            self._print(f"  {_pad(list(row))}")

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._print(f"  $ {step}")

    def json(self, payload: Mapping[str, Any]) -> None:
        """Emit a JSON payload with deterministic formatting."""

        self._print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def create_renderer(*, verbose: bool = False, stream: TextIO | None = None) -> CLIRenderer:
    return CLIRenderer(stream=stream, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
