"""The Ralph iteration loop: run the agent until it reports completion."""

from __future__ import annotations

import codecs
import contextlib
import functools
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, TextIO

from ralph_loop.agent_exec import execute_agent
from ralph_loop.archive import archive_if_branch_changed, ensure_progress_file
from ralph_loop.constants import (
    DOCKERENV_MARKER,
    PROGRESS_FILE,
    PROMPT_FILE,
    SUPPORTED_AGENTS,
)
from ralph_loop.models import (
    AgentExecResult,
    IterationRecord,
    LoopError,
    LoopOutcome,
    LoopState,
    ResolvedConfig,
)
from ralph_loop.progress import StreamProgressParser, format_cost
from ralph_loop.utils import _append_log, _compact_log_text

AgentExecutor = Callable[..., AgentExecResult]
Sleeper = Callable[[float, "threading.Event | None"], bool]


def build_agent_args(agent: str, *, model: str, verbose: bool) -> list[str]:
    if agent == "claude":
        args = ["--dangerously-skip-permissions", "--model", model, "--print"]
        if verbose:
            args.extend(["--verbose", "--output-format", "stream-json"])
        return args
    raise LoopError(
        f"unsupported agent '{agent}'; supported agents: {', '.join(SUPPORTED_AGENTS)}"
    )


def sleep_with_cancel(seconds: float, cancel_event: threading.Event | None) -> bool:
    """Sleep for ``seconds``; return True early if ``cancel_event`` is set."""
    delay = max(0.0, seconds)
    if cancel_event is None:
        time.sleep(delay)
        return False
    return cancel_event.wait(timeout=delay)


@contextlib.contextmanager
def interrupt_handler(cancel_event: threading.Event) -> Iterator[None]:
    """Translate the first SIGINT/SIGTERM into ``cancel_event.set()``.

    The handler uninstalls itself on first use, so a second interrupt gets the
    previous (usually default) behaviour. Handlers are restored on exit.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous: dict[int, Any] = {}

    def _restore() -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        previous.clear()

    def _handle(signum: int, _frame: Any) -> None:
        _restore()
        print("\nInterrupted. Cleaning up...", file=sys.stderr, flush=True)
        cancel_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, _handle)
    try:
        yield
    finally:
        _restore()


def format_summary_table(records: list[IterationRecord] | tuple[IterationRecord, ...]) -> str:
    headers = ("Iteration", "Turns", "Cost")
    rows = [(str(record.iteration), str(record.turns), format_cost(record.cost)) for record in records]
    costs = [record.cost for record in records]
    total_cost = sum(cost for cost in costs if cost is not None) if all(cost is not None for cost in costs) else None
    total_row = ("Total", str(sum(record.turns for record in records)), format_cost(total_cost))

    widths = [
        max(len(row[column]) for row in (headers, *rows, total_row))
        for column in range(len(headers))
    ]

    def _line(row: tuple[str, ...]) -> str:
        return " | ".join(value.ljust(widths[column]) for column, value in enumerate(row)).rstrip()

    separator = "-+-".join("-" * width for width in widths)
    lines = [_line(headers), separator, *(_line(row) for row in rows), separator, _line(total_row)]
    return "\n".join(lines)


def _mirror_to(stream: TextIO) -> Callable[[bytes], None]:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _write(chunk: bytes) -> None:
        stream.write(decoder.decode(chunk))
        stream.flush()

    return _write


def _run_iteration(
    index: int,
    *,
    agent: str,
    agent_args: list[str],
    prompt_text: str,
    verbose: bool,
    project_root: Path,
    cancel_event: threading.Event,
    execute: AgentExecutor,
    out: TextIO,
    records: list[IterationRecord],
) -> tuple[str, str, bool]:
    """Run one agent invocation; returns (completion subject, turns, aborted)."""
    parser: StreamProgressParser | None = None
    if verbose:
        parser = StreamProgressParser(
            index,
            write=lambda text: print(text, file=out, flush=True),
            log=functools.partial(_append_log, project_root),
        )
        on_stdout = parser.process_chunk
    else:
        on_stdout = _mirror_to(out)

    try:
        result = execute(
            agent,
            agent_args,
            input_text=prompt_text,
            on_stdout=on_stdout,
            on_stderr=_mirror_to(out),
            cancel_event=cancel_event,
            cwd=project_root,
        )
    except Exception as exc:
        print(f"ralph-loop run: ERROR agent execution failed: {exc}", file=out, flush=True)
        _append_log(project_root, f"agent execution failed iteration={index}: {_compact_log_text(str(exc))}")
        return ("", "?", False)

    for read_error in result.read_errors:
        print(f"ralph-loop run: WARN agent output may be truncated: {read_error}", file=out, flush=True)
        _append_log(project_root, f"agent {read_error} iteration={index}")

    if result.aborted:
        _append_log(project_root, f"agent aborted iteration={index}")
        return ("", "?", True)

    _append_log(project_root, f"agent exit iteration={index} exit_code={result.exit_code}")
    if result.exit_code != 0:
        print(f"ralph-loop run: WARN agent exited with code {result.exit_code}", file=out, flush=True)

    if parser is None:
        return (result.stdout, "?", False)

    parser.flush()
    progress = parser.get_result()
    records.append(IterationRecord(iteration=index, turns=progress.turns, cost=progress.cost))
    return (progress.output, str(progress.turns), False)


def run_loop(
    config: ResolvedConfig,
    *,
    iterations: int,
    project_root: Path,
    model: str | None = None,
    verbose: bool | None = None,
    cancel_event: threading.Event | None = None,
    execute: AgentExecutor = execute_agent,
    sleep: Sleeper = sleep_with_cancel,
    stream: TextIO | None = None,
) -> LoopOutcome:
    if iterations < 1:
        raise LoopError("iterations must be a positive integer")

    out = stream if stream is not None else sys.stderr
    defaults = config.defaults
    agent = defaults.agent
    effective_model = model or defaults.model
    effective_verbose = defaults.verbose if verbose is None else bool(verbose)
    agent_args = build_agent_args(agent, model=effective_model, verbose=effective_verbose)
    if cancel_event is None:
        cancel_event = threading.Event()

    if not DOCKERENV_MARKER.exists():
        print(
            "ralph-loop run: WARN it looks like you are running outside a Docker container. "
            "The loop is designed to run inside the Ralph container (use `ralph-loop start` to launch it).",
            file=out,
            flush=True,
        )

    ensure_progress_file(project_root)
    prompt_path = project_root / PROMPT_FILE

    print(
        " | ".join(
            [
                "Starting Ralph",
                f"Agent: {agent}",
                f"Model: {effective_model}",
                f"Verbose: {str(effective_verbose).lower()}",
                f"Iterations: {iterations}",
            ]
        ),
        file=out,
        flush=True,
    )
    _append_log(
        project_root,
        f"loop start agent={agent} model={effective_model} verbose={effective_verbose} iterations={iterations}",
    )

    records: list[IterationRecord] = []
    iterations_run = 0
    state: LoopState | None = None
    message = ""
    try:
        for index in range(1, iterations + 1):
            if cancel_event.is_set():
                state = LoopState.ABORTED
                break

            print(f"\n=== Ralph Iteration {index} of {iterations} ({agent}) ===", file=out, flush=True)
            archive_if_branch_changed(project_root)

            try:
                prompt_text = prompt_path.read_text(encoding="utf-8")
            except OSError as exc:
                message = f"prompt file could not be read at {prompt_path}: {exc}"
                print(f"ralph-loop run: ERROR {message}", file=out, flush=True)
                state = LoopState.FAILED
                break

            iterations_run += 1
            subject, turns_used, aborted = _run_iteration(
                index,
                agent=agent,
                agent_args=agent_args,
                prompt_text=prompt_text,
                verbose=effective_verbose,
                project_root=project_root,
                cancel_event=cancel_event,
                execute=execute,
                out=out,
                records=records,
            )
            if aborted:
                state = LoopState.ABORTED
                break

            if defaults.completion_signal in subject:
                message = f"All stories complete! Completed at iteration {index} of {iterations}"
                print(message, file=out, flush=True)
                state = LoopState.COMPLETED
                break

            if index < iterations:
                print(
                    f"Iteration {index} complete ({turns_used} turns). Sleeping {defaults.sleep_between_ms}ms...",
                    file=out,
                    flush=True,
                )
                sleep(defaults.sleep_between_ms / 1000, cancel_event)

        if state is None:
            state = LoopState.ABORTED if cancel_event.is_set() else LoopState.EXHAUSTED

        if state is LoopState.ABORTED:
            message = "Stopped."
            print(message, file=out, flush=True)
        elif state is LoopState.EXHAUSTED:
            message = f"Reached max iterations ({iterations}) without completing all tasks."
            print(f"ralph-loop run: WARN {message}", file=out, flush=True)
            print(f"ralph-loop run: WARN check {PROGRESS_FILE} for status.", file=out, flush=True)
        _append_log(project_root, f"loop end state={state.value} iterations_run={iterations_run}")
        return LoopOutcome(
            state=state,
            iterations_run=iterations_run,
            records=tuple(records),
            message=message,
        )
    finally:
        if records:
            print("", file=out)
            print(format_summary_table(records), file=out, flush=True)
