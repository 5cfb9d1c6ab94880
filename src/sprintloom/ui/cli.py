"""Command-line interface router for sprintloom."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import yaml

from sprintloom.config import dump_effective_config, effective_config, load_config
from sprintloom.control_plane.service import (
    OperationResult,
    OperationStatus,
    OrchestrationService,
)
from sprintloom.domain.errors import ConfigurationError
from sprintloom.domain.models import PHASE_ORDER
from sprintloom.main import ExitCode
from sprintloom.observability import setup_logging, shutdown_logging
from sprintloom.ui.render import CLIRenderer, create_renderer

_FATAL_EXIT_CODES: Final[Mapping[str | None, ExitCode]] = {
    "config": ExitCode.CONFIG_ERROR,
    "busy": ExitCode.GATE_FAILURE,
    "worker": ExitCode.WORKER_ERROR,
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="sprintloom",
        description=(
            "sprintloom — gated, sandboxed sprint pipelines driven by external workers.\n\n"
            "Common workflows:\n"
            "  sprintloom status               Show sprint progress\n"
            "  sprintloom run                  Run every runnable sprint in order\n"
            "  sprintloom run --parallel       Run independent sprints concurrently\n"
            "  sprintloom rollback 3 --to WRITE_CODE\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Repository root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to sprintloom TOML config (default: ./sprintloom.toml if present).",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="SECTION.KEY=VALUE",
        help="Override one config value (repeatable); VALUE is parsed as YAML.",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # init ----------------------------------------------------------------
    init_parser = subparsers.add_parser(
        "init", parents=[common], help="Create an empty progress file"
    )
    init_parser.add_argument("name", help="Project name")
    init_parser.add_argument("--description", default=None, help="Project description")
    init_parser.set_defaults(handler=_cmd_init)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status", parents=[common], help="Show sprint progress"
    )
    status_parser.set_defaults(handler=_cmd_status)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run sprints through their phases",
        description=(
            "Run one sprint, a selection, or every runnable sprint.\n\n"
            "Examples:\n"
            "  sprintloom run\n"
            "  sprintloom run --sprint 4\n"
            "  sprintloom run --sprint 4 --sprint 5 --concurrency 2\n"
            "  sprintloom run --parallel\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument(
        "--sprint",
        dest="sprint_ids",
        type=int,
        action="append",
        default=[],
        metavar="ID",
        help="Sprint id to run (repeatable)",
    )
    run_parser.add_argument(
        "--parallel",
        action="store_true",
        help="Run dependency-independent sprints concurrently",
    )
    run_parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Concurrent sprint limit (default: orchestrator.concurrency)",
    )
    run_parser.set_defaults(handler=_cmd_run)

    # rollback ------------------------------------------------------------
    rollback_parser = subparsers.add_parser(
        "rollback",
        parents=[common],
        help="Reset a sprint to an earlier phase and discard its workspace",
    )
    rollback_parser.add_argument("sprint_id", type=int, help="Sprint id")
    rollback_parser.add_argument(
        "--to",
        dest="target_phase",
        default="PENDING",
        help=(
            "Target phase (default: PENDING; one of "
            f"{', '.join(phase.value for phase in PHASE_ORDER)})"
        ),
    )
    rollback_parser.set_defaults(handler=_cmd_rollback)

    # workspaces ----------------------------------------------------------
    workspaces_parser = subparsers.add_parser(
        "workspaces", help="Inspect or clean up sprint workspaces"
    )
    workspace_actions = workspaces_parser.add_subparsers(dest="workspace_action", required=True)
    list_parser = workspace_actions.add_parser(
        "list", parents=[common], help="List known workspaces"
    )
    list_parser.set_defaults(handler=_cmd_workspaces_list)
    prune_parser = workspace_actions.add_parser(
        "prune", parents=[common], help="Drop stale workspaces not backing a live sprint"
    )
    prune_parser.set_defaults(handler=_cmd_workspaces_prune)
    delete_parser = workspace_actions.add_parser(
        "delete", parents=[common], help="Delete one workspace by name"
    )
    delete_parser.add_argument("name", help="Workspace name, e.g. sprint-3")
    delete_parser.set_defaults(handler=_cmd_workspaces_delete)

    # validate ------------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Run the schema and output-shape gates against files",
    )
    validate_parser.add_argument("paths", nargs="+", help="Files to validate")
    validate_parser.add_argument(
        "--fix", action="store_true", help="Apply auto-fixes and write them back"
    )
    validate_parser.set_defaults(handler=_cmd_validate)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective (redacted) configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        shutdown_logging()
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    service = _service(args)
    return _finish(args, service.init_project(args.name, description=args.description))


def _cmd_status(args: argparse.Namespace) -> int:
    service = _service(args)
    result = service.status()
    if args.json or not result.ok:
        return _finish(args, result)

    renderer = _get_renderer(args)
    data = result.data
    renderer.kv("Progress file", data["progress_file"])
    if not data["sprints"]:
        renderer.text("No sprints recorded.")
        renderer.next_steps(["sprintloom init <project-name>"])
        return int(ExitCode.SUCCESS)
    renderer.kv("Project", data["project"]["name"])
    renderer.table(
        ("ID", "STATUS", "WORKFLOW", "RETRIES", "DEPENDS ON", "GOAL"),
        [
            (
                sprint["id"],
                sprint["status"],
                sprint["workflow_type"],
                sprint["retry_count"],
                ",".join(str(item) for item in sprint["dependencies"]) or "-",
                sprint["goal"],
            )
            for sprint in data["sprints"]
        ],
        title="Sprints:",
    )
    blocked = [sprint for sprint in data["sprints"] if sprint["status"] == "BLOCKED"]
    if blocked:
        renderer.section("Blocked:")
        renderer.items(
            [
                f"sprint {sprint['id']} at {sprint['blocked_phase']}: {sprint['failure_report']}"
                for sprint in blocked
            ]
        )
    return int(ExitCode.SUCCESS)


def _cmd_run(args: argparse.Namespace) -> int:
    service = _service(args)
    if args.concurrency is not None and args.concurrency <= 0:
        raise CLIError("--concurrency must be > 0", exit_code=int(ExitCode.CONFIG_ERROR))
    if len(args.sprint_ids) == 1 and not args.parallel:
        result = service.run_sprint(args.sprint_ids[0])
    elif args.sprint_ids:
        result = service.run_selected(args.sprint_ids, concurrency=args.concurrency)
    else:
        result = service.run_all(parallel=args.parallel, concurrency=args.concurrency)
    return _finish(args, result)


def _cmd_rollback(args: argparse.Namespace) -> int:
    service = _service(args)
    return _finish(args, service.rollback(args.sprint_id, args.target_phase))


def _cmd_workspaces_list(args: argparse.Namespace) -> int:
    service = _service(args)
    result = service.list_workspaces()
    if args.json or not result.ok:
        return _finish(args, result)

    renderer = _get_renderer(args)
    handles = result.data["workspaces"]
    if not handles:
        renderer.text("No workspaces.")
        return int(ExitCode.SUCCESS)
    renderer.table(
        ("NAME", "KIND", "BRANCH", "PORTS", "PATH"),
        [
            (
                handle["name"],
                handle["kind"],
                handle["branch"],
                f"{handle['port_base']}-{handle['port_base'] + handle['port_block_size'] - 1}",
                handle["path"],
            )
            for handle in handles
        ],
    )
    return int(ExitCode.SUCCESS)


def _cmd_workspaces_prune(args: argparse.Namespace) -> int:
    return _finish(args, _service(args).prune_workspaces())


def _cmd_workspaces_delete(args: argparse.Namespace) -> int:
    return _finish(args, _service(args).delete_workspace(args.name))


def _cmd_validate(args: argparse.Namespace) -> int:
    service = _service(args)
    result = service.validate(args.paths, fix=args.fix)
    if args.json:
        return _finish(args, result)

    renderer = _get_renderer(args)
    if result.status is OperationStatus.FATAL:
        return _finish(args, result)
    report = result.data["report"]
    renderer.text(result.message)
    if args.verbose or not report["passed"]:
        renderer.items(
            [
                f"[{issue['severity']}] {issue['document'] or '-'}: "
                f"{issue['gate']}/{issue['category']}: {issue['message']}"
                for issue in report["issues"]
            ]
        )
    if report["fixes_applied"]:
        renderer.kv("Fixes applied", len(report["fixes_applied"]))
    return _exit_code(result)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if args.json:
        _get_renderer(args).json(effective_config(config))
    else:
        print(dump_effective_config(config))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(args: argparse.Namespace) -> OrchestrationService:
    config = _load_effective_config(args)
    setup_logging(config["observability"])
    return OrchestrationService(config, repo_root=_repo_root(args))


def _finish(args: argparse.Namespace, result: OperationResult) -> int:
    renderer = _get_renderer(args)
    if args.json:
        renderer.json(result.to_dict())
    elif result.status is OperationStatus.FATAL:
        print(f"error: {result.message}", file=sys.stderr)
    else:
        renderer.text(result.message)
        if args.verbose:
            _render_sprint_results(renderer, result.data)
    return _exit_code(result)


def _render_sprint_results(renderer: CLIRenderer, data: Mapping[str, Any]) -> None:
    results = data.get("results")
    if results is None and "sprint" in data and "outcome" in data["sprint"]:
        results = [data["sprint"]]
    if not results:
        return
    renderer.table(
        ("ID", "OUTCOME", "STATUS", "RETRIES", "REPORT"),
        [
            (
                item["sprint_id"],
                item["outcome"],
                item["status"],
                item["retry_count"],
                item["failure_report"] or "-",
            )
            for item in results
        ],
    )


def _exit_code(result: OperationResult) -> int:
    if result.status is OperationStatus.SUCCESS:
        return int(ExitCode.SUCCESS)
    if result.status is OperationStatus.GATE_FAILURE:
        if result.error_kind == "worker":
            return int(ExitCode.WORKER_ERROR)
        return int(ExitCode.GATE_FAILURE)
    return int(_FATAL_EXIT_CODES.get(result.error_kind, ExitCode.INTERNAL_ERROR))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=bool(getattr(args, "verbose", False)))


def _repo_root(args: argparse.Namespace) -> Path:
    candidate = Path(args.repo_root).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(
            f"repo root is not a directory: {candidate}", exit_code=int(ExitCode.CONFIG_ERROR)
        )
    return candidate


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    repo_root = _repo_root(args)
    config_path = args.config_path
    if config_path is not None and not Path(config_path).is_absolute():
        config_path = repo_root / config_path
    try:
        return load_config(
            config_path,
            repo_root=repo_root,
            cli_overrides=_parse_overrides(args.overrides),
        )
    except ConfigurationError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _parse_overrides(items: Sequence[str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for item in items:
        key, separator, raw_value = item.partition("=")
        if not separator or "." not in key:
            raise CLIError(
                f"--set expects SECTION.KEY=VALUE, got {item!r}",
                exit_code=int(ExitCode.CONFIG_ERROR),
            )
        try:
            overrides[key.strip()] = yaml.safe_load(raw_value) if raw_value.strip() else ""
        except yaml.YAMLError as exc:
            raise CLIError(
                f"--set {key}: value is not valid YAML: {exc}",
                exit_code=int(ExitCode.CONFIG_ERROR),
            ) from exc
    return overrides


__all__ = ["CLIError", "build_parser", "run_cli"]
