"""
sprintloom — runtime config loader.

File: src/sprintloom/config/loader.py

Purpose
- Build the effective config from defaults, ``sprintloom.toml``, ``SPRINTLOOM_*``
  environment variables and ``--set`` overrides, in increasing precedence.

Rules
- The default file is optional; an explicitly named one must exist.
- Every default leaf has an environment variable: ``SPRINTLOOM_`` plus the upper-cased
  dotted path joined by ``_`` (``SPRINTLOOM_ORCHESTRATOR_MAX_RETRIES``). Values are
  coerced to the leaf's type; list leaves take shell-style words.
- The merged result is validated twice: once after the file (so file errors name the
  file's keys) and once after all overrides.
- Path fields become absolute, relative to the config file's directory (or the
  repository root when no file exists).
"""

from __future__ import annotations

import json
import os
import shlex
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final

from sprintloom.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from sprintloom.domain.errors import ConfigurationError

DEFAULT_CONFIG_FILE: Final[str] = "sprintloom.toml"
ENV_PREFIX: Final[str] = "SPRINTLOOM_"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ConfigurationError):
    """The config file is missing or unreadable, or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    repo_root: str | Path | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    root = Path(repo_root).expanduser().resolve() if repo_root is not None else Path.cwd()
    if config_path is None:
        file_path = (root / DEFAULT_CONFIG_FILE).resolve()
    else:
        file_path = (Path.cwd() / Path(config_path).expanduser()).resolve()

    from_file = assert_valid_config(
        merge_config(default_config(), _read_toml(file_path, required=config_path is not None))
    )
    env_layer = _env_overrides(from_file, os.environ if environ is None else environ)
    cli_layer = _nest_cli_overrides(cli_overrides or {})
    effective = assert_valid_config(merge_config(merge_config(from_file, env_layer), cli_layer))

    return normalize_paths(effective, base_dir=file_path.parent if file_path.exists() else root)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with every path field made absolute against ``base_dir``."""

    out = merge_config({}, config)
    for section, key in PATH_FIELDS:
        value = out.get(section, {}).get(key)
        if isinstance(value, str):
            out[section][key] = _absolute_path_text(value, base_dir)
    return out


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` safe to print or log."""

    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(effective_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_overrides(
    config: Mapping[str, object],
    environ: Mapping[str, str],
    prefix: tuple[str, ...] = (),
) -> dict[str, Any]:
    """Overrides for every leaf of ``config`` named in ``environ``, typed like the leaf."""

    found: dict[str, Any] = {}
    for key in sorted(config):
        current = config[key]
        path = (*prefix, key)
        if isinstance(current, Mapping):
            nested = _env_overrides(current, environ, path)
            if nested:
                found[key] = nested
            continue
        env_name = ENV_PREFIX + "_".join(part.upper() for part in path)
        raw = environ.get(env_name)
        coerce = _coercer_for(current)
        if raw is None or coerce is None:
            continue
        try:
            found[key] = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)} {exc}") from exc
    return found


def _coercer_for(current: object) -> Callable[[str], object] | None:
    # bool before int: ``True`` is an ``int``.
    for kind, coerce in _ENV_COERCERS:
        if isinstance(current, kind):
            return coerce
    return None


def _as_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _as_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _as_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


def _as_words(raw: str) -> list[str]:
    # Shell-style words: SPRINTLOOM_WORKER_COMMAND="my-worker --flag 'two words'"
    try:
        return shlex.split(raw)
    except ValueError:
        raise ValueError("is not a valid word list") from None


_ENV_COERCERS: Final[tuple[tuple[type, Callable[[str], object]], ...]] = (
    (bool, _as_bool),
    (int, _as_int),
    (float, _as_float),
    (str, str),
    (list, _as_words),
)


def _nest_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    """``{"a.b": 1}`` -> ``{"a": {"b": 1}}``."""

    nested: dict[str, Any] = {}
    for dotted in sorted(cli_overrides):
        parts = [part for part in dotted.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        cursor = nested
        for part in parts[:-1]:
            child = cursor.get(part)
            if not isinstance(child, dict):
                child = cursor[part] = {}
            cursor = child
        cursor[parts[-1]] = cli_overrides[dotted]
    return nested


def _absolute_path_text(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "normalize_paths",
]
