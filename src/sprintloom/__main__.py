"""Module entrypoint for ``python -m sprintloom``."""

from __future__ import annotations

from sprintloom.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
