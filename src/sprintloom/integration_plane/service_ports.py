"""Rewrite service/environment definition files onto a workspace port block.

Compose ``ports:`` host mappings and ``*PORT=`` environment assignments are
remapped in order of first appearance across all files, so the same original
port always lands on the same block port inside one workspace.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from sprintloom.domain.errors import ConfigurationError, PortRangeExhausted
from sprintloom.utils.fs import atomic_write

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sprintloom.integration_plane.port_allocator import PortBlock

_ENV_PORT_LINE = re.compile(
    r"^(?P<prefix>\s*(?:export\s+)?[A-Za-z_][A-Za-z0-9_]*PORT\s*=\s*)"
    r"(?P<quote>[\"']?)(?P<port>\d{1,5})(?P=quote)(?P<suffix>\s*(?:#.*)?)$"
)
_PORT_RANGE = re.compile(r"^(\d{1,5})-(\d{1,5})$")


@dataclass(frozen=True, slots=True)
class ServiceFileRewrite:
    """One copied file plus the port substitutions applied to it."""

    name: str
    path: Path
    mapping: tuple[tuple[int, int], ...]


class PortRemapper:
    """Assign block ports to original ports in order of first appearance."""

    def __init__(self, block: PortBlock, *, key: int = 0) -> None:
        self._block = block
        self._key = key
        self._mapping: dict[int, int] = {}

    @property
    def mapping(self) -> dict[int, int]:
        return dict(self._mapping)

    def assign(self, original: int) -> int:
        if original in self._mapping:
            return self._mapping[original]
        offset = len(self._mapping)
        if offset >= self._block.size:
            raise PortRangeExhausted(
                self._key,
                1,
                f"service files declare more than {self._block.size} distinct ports",
            )
        assigned = self._block.port(offset)
        self._mapping[original] = assigned
        return assigned

    def assign_range(self, first: int, last: int) -> tuple[int, int]:
        mapped = [self.assign(port) for port in range(first, last + 1)]
        if mapped != list(range(mapped[0], mapped[0] + len(mapped))):
            raise ConfigurationError(
                f"port range {first}-{last} cannot be remapped onto a contiguous block"
            )
        return mapped[0], mapped[-1]


def rewrite_service_files(
    repo_root: Path,
    workspace_dir: Path,
    block: PortBlock,
    filenames: Sequence[str],
    *,
    key: int = 0,
) -> tuple[ServiceFileRewrite, ...]:
    """Copy each existing ``filenames`` entry from ``repo_root`` into ``workspace_dir``."""

    remapper = PortRemapper(block, key=key)
    rewrites: list[ServiceFileRewrite] = []
    for name in filenames:
        source = repo_root / name
        if not source.is_file():
            continue
        before = remapper.mapping
        text = source.read_text(encoding="utf-8")
        if _is_env_file(name):
            rendered = rewrite_env_ports(text, remapper)
        else:
            rendered = rewrite_compose_ports(text, remapper, source=name)
        target = workspace_dir / name
        atomic_write(target, rendered)
        applied = tuple(
            (original, port)
            for original, port in remapper.mapping.items()
            if original not in before
        )
        rewrites.append(ServiceFileRewrite(name=name, path=target, mapping=applied))
    return tuple(rewrites)


def rewrite_env_ports(text: str, remapper: PortRemapper) -> str:
    lines: list[str] = []
    for line in text.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        ending = line[len(body) :]
        match = _ENV_PORT_LINE.match(body)
        if match is None:
            lines.append(line)
            continue
        port = remapper.assign(int(match.group("port")))
        quote = match.group("quote")
        lines.append(f"{match.group('prefix')}{quote}{port}{quote}{match.group('suffix')}{ending}")
    return "".join(lines)


def rewrite_compose_ports(text: str, remapper: PortRemapper, *, source: str = "compose") -> str:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"cannot parse service file {source}: {exc}") from exc
    if not isinstance(document, dict):
        return text

    services = document.get("services")
    if not isinstance(services, dict):
        return text

    changed = False
    for service in services.values():
        if not isinstance(service, dict):
            continue
        ports = service.get("ports")
        if not isinstance(ports, list):
            continue
        remapped = [_remap_compose_entry(entry, remapper) for entry in ports]
        if remapped != ports:
            service["ports"] = remapped
            changed = True

    if not changed:
        return text
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def _remap_compose_entry(entry: Any, remapper: PortRemapper) -> Any:
    if isinstance(entry, dict):
        published = entry.get("published")
        if published is None:
            return entry
        if isinstance(published, int) and not isinstance(published, bool):
            return {**entry, "published": remapper.assign(published)}
        if isinstance(published, str):
            return {**entry, "published": _remap_host_port(published, remapper)}
        return entry

    if not isinstance(entry, str):
        # A bare container port has no host side.
        return entry

    port_spec, slash, protocol = entry.partition("/")
    parts = port_spec.split(":")
    if len(parts) < 2:
        return entry
    # ``[ip:]host:container``; IPv6 hosts are bracketed and contain more colons.
    host_index = len(parts) - 2
    host = parts[host_index]
    if not host:
        return entry
    parts[host_index] = _remap_host_port(host, remapper)
    return ":".join(parts) + (f"{slash}{protocol}" if slash else "")


def _remap_host_port(host: str, remapper: PortRemapper) -> str:
    text = host.strip()
    if text.isdigit():
        return str(remapper.assign(int(text)))
    match = _PORT_RANGE.match(text)
    if match is not None:
        first, last = remapper.assign_range(int(match.group(1)), int(match.group(2)))
        return f"{first}-{last}"
    return host


def _is_env_file(name: str) -> bool:
    base = Path(name).name
    return base == ".env" or base.startswith(".env.") or base.endswith(".env")


__all__ = [
    "PortRemapper",
    "ServiceFileRewrite",
    "rewrite_compose_ports",
    "rewrite_env_ports",
    "rewrite_service_files",
]
