"""Incremental parser for the agent's ``stream-json`` output.

The agent writes one JSON object per line, but the pipe hands us chunks at OS
buffer granularity: a message can span several chunks and one chunk can carry
several messages. ``StreamProgressParser`` reassembles lines, decodes each one
into a known message variant and prints human-readable progress as it goes.
"""

from __future__ import annotations

import codecs
import json
import sys
from collections.abc import Callable
from typing import Any

from ralph_loop.constants import (
    FILE_TOOLS,
    PATTERN_TOOLS,
    SHELL_COMMAND_PREVIEW_CHARS,
    SHELL_TOOLS,
)
from ralph_loop.models import (
    AssistantMessage,
    ProgressResult,
    ResultMessage,
    StreamMessage,
    SystemMessage,
    TextContent,
    ToolUseContent,
    UnrecognizedMessage,
    UserMessage,
)

ProgressWriter = Callable[[str], None]
DiagnosticLogger = Callable[[str], None]


def _write_stderr(text: str) -> None:
    print(text, file=sys.stderr, flush=True)


# ---------------------------------------------------------------------------
# Message decoding
# ---------------------------------------------------------------------------


def _decode_cost(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _decode_tool_input(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    decoded: dict[str, str] = {}
    for key, item in value.items():
        if isinstance(item, str):
            decoded[str(key)] = item
        elif item is not None:
            decoded[str(key)] = json.dumps(item) if isinstance(item, (dict, list)) else str(item)
    return decoded


def _decode_content(raw_message: Any) -> tuple[TextContent | ToolUseContent, ...]:
    if not isinstance(raw_message, dict):
        return ()
    raw_content = raw_message.get("content")
    if not isinstance(raw_content, list):
        return ()
    items: list[TextContent | ToolUseContent] = []
    for entry in raw_content:
        if not isinstance(entry, dict):
            continue
        entry_type = entry.get("type")
        if entry_type == "text":
            text = entry.get("text")
            items.append(TextContent(text=text if isinstance(text, str) else ""))
        elif entry_type == "tool_use":
            name = entry.get("name")
            items.append(
                ToolUseContent(
                    name=name if isinstance(name, str) else "",
                    input=_decode_tool_input(entry.get("input")),
                )
            )
    return tuple(items)


def decode_stream_message(line: str) -> StreamMessage | None:
    """Decode one output line; returns None for anything that is not a message.

    Never raises: blank lines, partial JSON, non-object payloads and objects
    without a string ``type`` all decode to None.
    """
    text = line.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    kind = payload.get("type")
    if not isinstance(kind, str) or not kind:
        return None

    if kind == "system":
        return SystemMessage()
    if kind == "user":
        return UserMessage()
    if kind == "assistant":
        return AssistantMessage(content=_decode_content(payload.get("message")))
    if kind == "result":
        result = payload.get("result")
        return ResultMessage(
            result=result if isinstance(result, str) else "",
            cost=_decode_cost(payload.get("total_cost_usd")),
        )
    return UnrecognizedMessage(kind=kind)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_cost(cost: float | None) -> str:
    if cost is None:
        return "$?"
    return f"${cost:.4f}"


def summarize_tool_use(item: ToolUseContent) -> str:
    name = item.name
    if name in FILE_TOOLS:
        file_path = item.input.get("file_path", "")
        return f"{name} {file_path.rsplit('/', 1)[-1]}"
    if name in PATTERN_TOOLS:
        return f"{name} {item.input.get('pattern', '')}"
    if name in SHELL_TOOLS:
        return f"{name} {item.input.get('command', '')[:SHELL_COMMAND_PREVIEW_CHARS]}"
    return name


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class StreamProgressParser:
    """Line-buffered consumer for one iteration's agent stdout."""

    def __init__(
        self,
        iteration: int,
        *,
        write: ProgressWriter | None = None,
        log: DiagnosticLogger | None = None,
    ) -> None:
        self.iteration = iteration
        self._write = write or _write_stderr
        self._log = log
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._turns = 0
        self._cost: float | None = None
        self._result_text = ""

    def process_chunk(self, chunk: bytes | str) -> None:
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(bytes(chunk))
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._process_line(line)

    def flush(self) -> None:
        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._decoder.reset()
        for line in remainder.split("\n"):
            self._process_line(line)

    def get_result(self) -> ProgressResult:
        return ProgressResult(output=self._result_text, turns=self._turns, cost=self._cost)

    def _process_line(self, line: str) -> None:
        message = decode_stream_message(line)
        if message is None:
            return
        if isinstance(message, (SystemMessage, UserMessage)):
            return
        if isinstance(message, AssistantMessage):
            self._handle_assistant(message)
        elif isinstance(message, ResultMessage):
            self._handle_result(message)
        elif self._log is not None:
            self._log(f"stream parser: unrecognized message type '{message.kind}'")

    def _handle_assistant(self, message: AssistantMessage) -> None:
        self._turns += 1
        self._write(f"--- Iteration {self.iteration} | Turn {self._turns} ---")

        tool_details = [
            summarize_tool_use(item)
            for item in message.content
            if isinstance(item, ToolUseContent)
        ]
        if tool_details:
            self._write("\n".join(f"  {detail}" for detail in tool_details))

        text = "".join(item.text for item in message.content if isinstance(item, TextContent))
        if text:
            self._write(text)

    def _handle_result(self, message: ResultMessage) -> None:
        self._result_text = message.result
        self._cost = message.cost
        if message.result:
            self._write("")
            self._write(message.result)
        self._write("---")
        self._write(f"Completed in {self._turns} turns | Cost: {format_cost(self._cost)}")


def parse_stream_output(
    raw_output: bytes | str,
    iteration: int,
    *,
    write: ProgressWriter | None = None,
) -> ProgressResult:
    parser = StreamProgressParser(iteration, write=write)
    parser.process_chunk(raw_output)
    parser.flush()
    return parser.get_result()
