from __future__ import annotations

import argparse
import sys
import threading
from pathlib import Path

from ralph_loop.config import find_config_file, load_config
from ralph_loop.constants import CONFIG_FILE_NAMES, GENERATE_ONLY_CHOICES, SAMPLE_CONFIG
from ralph_loop.container import (
    exec_in_container,
    show_logs,
    start_container,
    stop_container,
)
from ralph_loop.generators import generate_all
from ralph_loop.models import ConfigError, ContainerError, LoopError, TemplateError
from ralph_loop.runner import interrupt_handler, run_loop
from ralph_loop.utils import _append_log, ensure_gitignore_block, get_package_version

_HANDLED_ERRORS = (ConfigError, ContainerError, LoopError, TemplateError)


def _project_root(args: argparse.Namespace) -> Path:
    return Path(args.project_root).expanduser().resolve()


def _positive_int(value: str) -> int:
    try:
        parsed = int(value, 10)
    except ValueError:
        raise argparse.ArgumentTypeError("iterations must be a positive integer") from None
    if parsed < 1:
        raise argparse.ArgumentTypeError("iterations must be a positive integer")
    return parsed


def _report_error(command: str, exc: Exception) -> int:
    print(f"ralph-loop {command}: ERROR {exc}", file=sys.stderr)
    return 1


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    existing = find_config_file(project_root)
    if existing is not None:
        print(
            f"ralph-loop init: WARN {existing.name} already exists. Regenerating files from existing config.",
            file=sys.stderr,
        )
    else:
        config_path = project_root / CONFIG_FILE_NAMES[0]
        config_path.write_text(SAMPLE_CONFIG, encoding="utf-8")
        print(f"Created {config_path.name}")

    if ensure_gitignore_block(project_root):
        print("Updated .gitignore")

    try:
        config = load_config(project_root)
        generate_all(config, project_root)
    except _HANDLED_ERRORS as exc:
        return _report_error("init", exc)

    _append_log(project_root, "init complete")
    print(f"Init complete. Edit {CONFIG_FILE_NAMES[0]} and run `ralph-loop generate` to regenerate.")
    return 0


def _cmd_generate(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    try:
        config = load_config(project_root)
        files = generate_all(config, project_root, dry_run=args.dry_run, only=args.only)
    except _HANDLED_ERRORS as exc:
        return _report_error("generate", exc)
    if not args.dry_run:
        _append_log(project_root, f"generated {len(files)} file(s) only={args.only or 'all'}")
    return 0


def _cmd_start(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    try:
        config = load_config(project_root)
        return start_container(config, project_root, attach=not args.no_attach)
    except _HANDLED_ERRORS as exc:
        return _report_error("start", exc)


def _cmd_stop(args: argparse.Namespace) -> int:
    try:
        return stop_container(_project_root(args))
    except _HANDLED_ERRORS as exc:
        return _report_error("stop", exc)


def _cmd_restart(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    try:
        stop_container(project_root)
        config = load_config(project_root)
        return start_container(config, project_root, attach=not args.no_attach)
    except _HANDLED_ERRORS as exc:
        return _report_error("restart", exc)


def _cmd_logs(args: argparse.Namespace) -> int:
    try:
        config = load_config(_project_root(args))
        return show_logs(config.container.name)
    except _HANDLED_ERRORS as exc:
        return _report_error("logs", exc)


def _cmd_exec(args: argparse.Namespace) -> int:
    try:
        config = load_config(_project_root(args))
        return exec_in_container(config.container.name, [args.exec_command, *args.exec_args])
    except _HANDLED_ERRORS as exc:
        return _report_error("exec", exc)


def _cmd_run(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    cancel_event = threading.Event()
    try:
        config = load_config(project_root)
        with interrupt_handler(cancel_event):
            outcome = run_loop(
                config,
                iterations=args.iterations,
                project_root=project_root,
                model=args.model,
                verbose=args.verbose,
                cancel_event=cancel_event,
            )
    except _HANDLED_ERRORS as exc:
        return _report_error("run", exc)
    return outcome.exit_code


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_project_root(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-root",
        default=".",
        help="Project directory containing ralph-loop.yaml (default: .)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph-loop",
        description="Set up and run Ralph autonomous coding loops in a container",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_package_version()}")
    subparsers = parser.add_subparsers(dest="command")

    init = subparsers.add_parser("init", help="Scaffold ralph-loop.yaml and generate all files")
    _add_project_root(init)
    init.set_defaults(handler=_cmd_init)

    generate = subparsers.add_parser("generate", help="Regenerate files from ralph-loop.yaml")
    _add_project_root(generate)
    generate.add_argument("--dry-run", action="store_true", help="List files without writing them")
    generate.add_argument(
        "--only",
        choices=GENERATE_ONLY_CHOICES,
        default=None,
        help="Generate only one group of files",
    )
    generate.set_defaults(handler=_cmd_generate)

    start = subparsers.add_parser("start", help="Build and start the container")
    _add_project_root(start)
    start.add_argument("--no-attach", action="store_true", help="Start without attaching a shell")
    start.set_defaults(handler=_cmd_start)

    stop = subparsers.add_parser("stop", help="Stop the container")
    _add_project_root(stop)
    stop.set_defaults(handler=_cmd_stop)

    restart = subparsers.add_parser("restart", help="Stop and start the container")
    _add_project_root(restart)
    restart.add_argument("--no-attach", action="store_true", help="Start without attaching a shell")
    restart.set_defaults(handler=_cmd_restart)

    logs = subparsers.add_parser("logs", help="Follow container logs")
    _add_project_root(logs)
    logs.set_defaults(handler=_cmd_logs)

    run = subparsers.add_parser("run", help="Execute the Ralph iteration loop")
    _add_project_root(run)
    run.add_argument("iterations", type=_positive_int, help="Number of iterations to run")
    run.add_argument("--model", default=None, help="Override the configured model")
    run.add_argument(
        "--verbose",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Show stream-json progress (default: from config)",
    )
    run.set_defaults(handler=_cmd_run)

    exec_parser = subparsers.add_parser("exec", help="Run a command inside the container")
    _add_project_root(exec_parser)
    exec_parser.add_argument("exec_command", metavar="COMMAND", help="Command to execute")
    exec_parser.add_argument("exec_args", metavar="ARGS", nargs=argparse.REMAINDER, help="Command arguments")
    exec_parser.set_defaults(handler=_cmd_exec)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
