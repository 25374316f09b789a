from __future__ import annotations

import json

from ralph_loop.models import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextContent,
    ToolUseContent,
    UnrecognizedMessage,
    UserMessage,
)
from ralph_loop.progress import (
    StreamProgressParser,
    decode_stream_message,
    format_cost,
    parse_stream_output,
    summarize_tool_use,
)


def _assistant_line(*content: dict) -> str:
    return json.dumps({"type": "assistant", "message": {"content": list(content)}})


def _result_line(result: str, cost: float | None = None) -> str:
    payload: dict = {"type": "result", "result": result}
    if cost is not None:
        payload["total_cost_usd"] = cost
    return json.dumps(payload)


def _session_bytes() -> bytes:
    lines = [
        json.dumps({"type": "system", "subtype": "init"}),
        _assistant_line(
            {"type": "text", "text": "Looking at the PRD."},
            {"type": "tool_use", "name": "Read", "input": {"file_path": "/workspace/.ralph/prd.json"}},
        ),
        json.dumps({"type": "user", "message": {"content": []}}),
        _assistant_line({"type": "tool_use", "name": "Bash", "input": {"command": "npm test"}}),
        _result_line("Story US-001 done. RALPH_WORK_FULLY_DONE", cost=0.0421),
    ]
    return ("\n".join(lines) + "\n").encode("utf-8")


def test_decode_stream_message_ignores_non_messages() -> None:
    assert decode_stream_message("") is None
    assert decode_stream_message("   ") is None
    assert decode_stream_message("not json") is None
    assert decode_stream_message('{"type": "assistant"') is None
    assert decode_stream_message("[1, 2, 3]") is None
    assert decode_stream_message('{"message": {}}') is None
    assert decode_stream_message('{"type": 7}') is None


def test_decode_stream_message_variants() -> None:
    assert decode_stream_message('{"type": "system"}') == SystemMessage()
    assert decode_stream_message('{"type": "user"}') == UserMessage()
    assert decode_stream_message('{"type": "rate_limit"}') == UnrecognizedMessage(kind="rate_limit")

    assistant = decode_stream_message(
        _assistant_line(
            {"type": "text", "text": "hi"},
            {"type": "tool_use", "name": "Grep", "input": {"pattern": "TODO", "-n": True}},
            {"type": "thinking", "thinking": "skip me"},
        )
    )
    assert assistant == AssistantMessage(
        content=(
            TextContent(text="hi"),
            ToolUseContent(name="Grep", input={"pattern": "TODO", "-n": "True"}),
        )
    )

    result = decode_stream_message(_result_line("ok", cost=0.5))
    assert result == ResultMessage(result="ok", cost=0.5)
    assert decode_stream_message('{"type": "result", "total_cost_usd": "free"}') == ResultMessage(
        result="", cost=None
    )


def test_summarize_tool_use_by_tool_family() -> None:
    assert summarize_tool_use(ToolUseContent("Edit", {"file_path": "/workspace/src/app.ts"})) == "Edit app.ts"
    assert summarize_tool_use(ToolUseContent("Glob", {"pattern": "**/*.py"})) == "Glob **/*.py"
    long_command = "echo " + "x" * 200
    assert summarize_tool_use(ToolUseContent("Bash", {"command": long_command})) == f"Bash {long_command[:80]}"
    assert summarize_tool_use(ToolUseContent("TodoWrite", {})) == "TodoWrite"


def test_format_cost() -> None:
    assert format_cost(None) == "$?"
    assert format_cost(0.0421) == "$0.0421"
    assert format_cost(1) == "$1.0000"


def test_parser_reports_turns_tools_and_result() -> None:
    written: list[str] = []
    result = parse_stream_output(_session_bytes(), 3, write=written.append)

    assert result.turns == 2
    assert result.cost == 0.0421
    assert result.output == "Story US-001 done. RALPH_WORK_FULLY_DONE"
    assert written[0] == "--- Iteration 3 | Turn 1 ---"
    assert "  Read prd.json" in written
    assert "Looking at the PRD." in written
    assert "--- Iteration 3 | Turn 2 ---" in written
    assert "  Bash npm test" in written
    assert written[-2] == "---"
    assert written[-1] == "Completed in 2 turns | Cost: $0.0421"


def test_parser_result_is_independent_of_chunk_boundaries() -> None:
    data = _session_bytes()
    expected_writes: list[str] = []
    expected = parse_stream_output(data, 1, write=expected_writes.append)

    for split in range(1, len(data), 7):
        writes: list[str] = []
        parser = StreamProgressParser(1, write=writes.append)
        parser.process_chunk(data[:split])
        parser.process_chunk(data[split:])
        parser.flush()
        assert parser.get_result() == expected
        assert writes == expected_writes


def test_parser_handles_byte_at_a_time_multibyte_text() -> None:
    line = _result_line("héllo ✓ done").encode("utf-8")
    parser = StreamProgressParser(1, write=lambda _text: None)
    for index in range(len(line)):
        parser.process_chunk(line[index : index + 1])
    parser.flush()

    assert parser.get_result().output == "héllo ✓ done"


def test_parser_flush_processes_final_line_without_newline() -> None:
    parser = StreamProgressParser(1, write=lambda _text: None)
    parser.process_chunk(_result_line("tail", cost=0.01))
    assert parser.get_result().output == ""

    parser.flush()
    assert parser.get_result().output == "tail"
    assert parser.get_result().cost == 0.01


def test_parser_skips_malformed_lines_and_logs_unknown_kinds() -> None:
    logged: list[str] = []
    parser = StreamProgressParser(1, write=lambda _text: None, log=logged.append)
    parser.process_chunk('{"type": "assis\nnot json at all\n{"type": "stream_event"}\n')
    parser.process_chunk(_assistant_line({"type": "text", "text": "still going"}) + "\n")
    parser.flush()

    result = parser.get_result()
    assert result.turns == 1
    assert result.output == ""
    assert result.cost is None
    assert logged == ["stream parser: unrecognized message type 'stream_event'"]
