"""Run the coding agent as a child process and stream its output.

Two pump threads read stdout and stderr in OS-sized chunks and push them onto a
single queue. The calling thread drains the queue, so ``on_stdout`` and
``on_stderr`` fire on the caller's thread, one chunk at a time, in the order
the chunks arrived.
"""

from __future__ import annotations

import queue
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import IO, Any

from ralph_loop.constants import (
    AGENT_POLL_INTERVAL_SECONDS,
    AGENT_READ_CHUNK_SIZE,
    DEFAULT_KILL_TIMEOUT_SECONDS,
)
from ralph_loop.models import AgentExecResult

ChunkCallback = Callable[[bytes], None]

STDOUT = "stdout"
STDERR = "stderr"


def _pump_stream(stream: IO[bytes] | None, name: str, chunks: queue.Queue[Any]) -> None:
    if stream is None:
        chunks.put((name, None))
        return
    try:
        while True:
            data = stream.read1(AGENT_READ_CHUNK_SIZE)  # type: ignore[attr-defined]
            if not data:
                break
            chunks.put((name, data))
    except (OSError, ValueError) as exc:
        chunks.put((name, exc))
    finally:
        try:
            stream.close()
        except OSError:
            pass
        chunks.put((name, None))


def _feed_stdin(stream: IO[bytes] | None, payload: bytes) -> None:
    if stream is None:
        return
    try:
        if payload:
            stream.write(payload)
            stream.flush()
    except (BrokenPipeError, OSError, ValueError):
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


def _request_termination(process: subprocess.Popen[bytes]) -> None:
    if process.poll() is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        pass


def _reap(process: subprocess.Popen[bytes], kill_timeout: float | None) -> None:
    """Terminate ``process`` and wait for it, killing it if SIGTERM is not enough."""
    _request_termination(process)
    try:
        process.wait(timeout=kill_timeout if kill_timeout is not None else DEFAULT_KILL_TIMEOUT_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def execute_agent(
    command: str,
    args: Sequence[str],
    *,
    input_text: str | None = None,
    on_stdout: ChunkCallback | None = None,
    on_stderr: ChunkCallback | None = None,
    cancel_event: threading.Event | None = None,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    kill_timeout: float | None = DEFAULT_KILL_TIMEOUT_SECONDS,
) -> AgentExecResult:
    """Spawn ``command`` and block until it exits.

    Non-zero exit codes are reported, never raised. ``aborted`` is True when
    ``cancel_event`` was set on entry or before the process exited on its own;
    the process is then sent SIGTERM, and SIGKILL after ``kill_timeout``
    seconds unless ``kill_timeout`` is None. Spawn failures (``OSError``)
    propagate. If a callback raises, the process is reaped before the
    exception propagates.
    """
    process = subprocess.Popen(
        [command, *args],
        cwd=cwd,
        env=dict(env) if env is not None else None,
        shell=False,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )

    chunks: queue.Queue[Any] = queue.Queue()
    threads = [
        threading.Thread(target=_pump_stream, args=(process.stdout, STDOUT, chunks), daemon=True),
        threading.Thread(target=_pump_stream, args=(process.stderr, STDERR, chunks), daemon=True),
    ]
    if input_text is not None:
        threads.append(
            threading.Thread(
                target=_feed_stdin,
                args=(process.stdin, input_text.encode("utf-8")),
                daemon=True,
            )
        )
    for thread in threads:
        thread.start()

    callbacks = {STDOUT: on_stdout, STDERR: on_stderr}
    captured: dict[str, list[bytes]] = {STDOUT: [], STDERR: []}
    read_errors: list[str] = []
    aborted = False
    terminated_at: float | None = None

    def _check_cancellation() -> None:
        nonlocal aborted, terminated_at
        if aborted or cancel_event is None or not cancel_event.is_set():
            return
        if process.poll() is not None:
            return
        aborted = True
        terminated_at = time.monotonic()
        _request_termination(process)

    def _check_escalation() -> None:
        if terminated_at is None or kill_timeout is None:
            return
        if process.poll() is None and time.monotonic() - terminated_at >= kill_timeout:
            process.kill()

    if cancel_event is not None and cancel_event.is_set():
        aborted = True
        terminated_at = time.monotonic()
        _request_termination(process)

    try:
        open_streams = 2
        while open_streams:
            try:
                name, data = chunks.get(timeout=AGENT_POLL_INTERVAL_SECONDS)
            except queue.Empty:
                _check_cancellation()
                _check_escalation()
                continue
            if data is None:
                open_streams -= 1
                continue
            if isinstance(data, Exception):
                read_errors.append(f"{name} read failed: {data}")
                continue
            captured[name].append(data)
            callback = callbacks[name]
            if callback is not None:
                callback(data)
            _check_cancellation()
            _check_escalation()

        while True:
            try:
                returncode = process.wait(timeout=AGENT_POLL_INTERVAL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                _check_cancellation()
                _check_escalation()
    except BaseException:
        _reap(process, kill_timeout)
        raise
    finally:
        for thread in threads:
            thread.join(timeout=2)

    return AgentExecResult(
        stdout=b"".join(captured[STDOUT]).decode("utf-8", errors="replace"),
        stderr=b"".join(captured[STDERR]).decode("utf-8", errors="replace"),
        exit_code=returncode if returncode is not None and returncode >= 0 else 1,
        aborted=aborted,
        read_errors=tuple(read_errors),
    )
