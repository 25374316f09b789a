"""Drive the Ralph container through the docker CLI."""

from __future__ import annotations

import os
import subprocess
import sys
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from ralph_loop.constants import (
    COMPOSE_FILE,
    CONTAINER_POLL_INTERVAL_SECONDS,
    CONTAINER_READY_MARKER,
    CONTAINER_READY_TIMEOUT_SECONDS,
    OAUTH_TOKEN_ENV,
)
from ralph_loop.models import ContainerError, ResolvedConfig
from ralph_loop.utils import _append_log


def _run_docker(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    capture: bool = False,
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            list(argv),
            cwd=cwd,
            text=True,
            capture_output=capture,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ContainerError(f"{argv[0]} was not found on PATH: {exc}") from exc


def _compose_argv(*args: str) -> list[str]:
    return ["docker", "compose", "-f", COMPOSE_FILE, *args]


def is_container_running(name: str) -> bool:
    try:
        proc = subprocess.run(
            ["docker", "inspect", "-f", "{{.State.Running}}", name],
            text=True,
            capture_output=True,
            check=False,
        )
    except (FileNotFoundError, OSError):
        return False
    return proc.returncode == 0 and proc.stdout.strip() == "true"


def wait_for_ready(
    name: str,
    *,
    timeout: float = CONTAINER_READY_TIMEOUT_SECONDS,
    poll_interval: float = CONTAINER_POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll for the entrypoint's ready marker; returns False on timeout."""
    deadline = clock() + timeout
    while clock() < deadline:
        proc = _run_docker(["docker", "exec", name, "test", "-f", CONTAINER_READY_MARKER], capture=True)
        if proc.returncode == 0:
            return True
        sleep(poll_interval)
    return False


def start_container(
    config: ResolvedConfig,
    project_root: Path,
    *,
    attach: bool = True,
    env: Mapping[str, str] | None = None,
) -> int:
    """Build and start the container, then optionally attach an interactive shell.

    Returns the attached shell's exit status, or 0 when not attaching.
    """
    environ = os.environ if env is None else env
    if not environ.get(OAUTH_TOKEN_ENV):
        raise ContainerError(
            f"{OAUTH_TOKEN_ENV} is not set.\nRun: export {OAUTH_TOKEN_ENV}=$(claude setup-token)"
        )

    pre_start = config.setup.pre_start_command.strip()
    if pre_start:
        print(f"Running pre-start command: {pre_start}")
        proc = _run_docker(["sh", "-c", pre_start], cwd=project_root)
        if proc.returncode != 0:
            raise ContainerError(f"pre-start command failed with exit code {proc.returncode}")

    name = config.container.name
    if is_container_running(name):
        print("Ralph container already running.")
    else:
        if not (project_root / COMPOSE_FILE).exists():
            raise ContainerError(f"{COMPOSE_FILE} not found; run `ralph-loop generate` first")
        print("Starting Ralph container...")
        proc = _run_docker(_compose_argv("up", "-d", "--build"), cwd=project_root)
        if proc.returncode != 0:
            raise ContainerError(f"docker compose up failed with exit code {proc.returncode}")
        _append_log(project_root, f"container started name={name}")

        print("Waiting for container initialization...")
        if wait_for_ready(name):
            print("Container ready.")
        else:
            print(
                "ralph-loop start: WARN container did not become ready within 5 minutes. Proceeding anyway.",
                file=sys.stderr,
            )

    if not attach:
        return 0
    print("Attaching to container...")
    return exec_in_container(name, ["bash"])


def stop_container(project_root: Path) -> int:
    print("Stopping Ralph container...")
    proc = _run_docker(_compose_argv("down"), cwd=project_root)
    _append_log(project_root, f"container stopped exit_code={proc.returncode}")
    return proc.returncode


def show_logs(name: str) -> int:
    return _run_docker(["docker", "logs", name, "--follow"]).returncode


def exec_in_container(name: str, command: Sequence[str]) -> int:
    if not command:
        raise ContainerError("no command given to run in the container")
    return _run_docker(["docker", "exec", "-it", name, *command]).returncode
