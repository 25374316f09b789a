from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from ralph_loop import commands
from ralph_loop.commands import main
from ralph_loop.models import LoopOutcome, LoopState


def _write_config(repo: Path, body: str = "project:\n  name: Demo\n") -> None:
    (repo / "ralph-loop.yaml").write_text(body, encoding="utf-8")


@pytest.mark.parametrize("value", ["0", "-2", "abc", "1.5"])
def test_run_rejects_invalid_iterations(value: str, tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["run", value, "--project-root", str(tmp_path)])
    assert excinfo.value.code == 2


def test_main_without_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([]) == 2
    assert "usage: ralph-loop" in capsys.readouterr().out


def test_init_scaffolds_config_and_generates_files(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["init", "--project-root", str(tmp_path)]) == 0

    assert (tmp_path / "ralph-loop.yaml").read_text(encoding="utf-8").startswith("# ralph-loop configuration")
    assert "# >>> ralph-loop >>>" in (tmp_path / ".gitignore").read_text(encoding="utf-8")
    assert (tmp_path / ".ralph-container" / "docker-compose.yml").exists()
    assert (tmp_path / ".ralph-container" / "ralph-prompt.md").exists()
    assert (tmp_path / ".claude" / "skills" / "prd" / "SKILL.md").exists()
    assert "Init complete." in capsys.readouterr().out


def test_init_keeps_existing_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_config(tmp_path, "project:\n  name: Existing\n")

    assert main(["init", "--project-root", str(tmp_path)]) == 0

    assert (tmp_path / "ralph-loop.yaml").read_text(encoding="utf-8") == "project:\n  name: Existing\n"
    assert "already exists" in capsys.readouterr().err
    assert "Existing" in (tmp_path / ".ralph-container" / "ralph-prompt.md").read_text(encoding="utf-8")


def test_generate_dry_run_only_lists_files(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_config(tmp_path)

    assert main(["generate", "--project-root", str(tmp_path), "--dry-run", "--only", "prompt"]) == 0

    assert "[dry-run] Would write: .ralph-container/ralph-prompt.md" in capsys.readouterr().out
    assert not (tmp_path / ".ralph-container").exists()


def test_generate_reports_invalid_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_config(tmp_path, "project:\n  name: Demo\ndefaults:\n  agent: codex\n")

    assert main(["generate", "--project-root", str(tmp_path)]) == 1

    err = capsys.readouterr().err
    assert err.startswith("ralph-loop generate: ERROR invalid ralph-loop config")
    assert "defaults.agent" in err


def test_run_without_config_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["run", "3", "--project-root", str(tmp_path)]) == 1
    assert "no ralph-loop config found" in capsys.readouterr().err


def test_run_passes_options_and_returns_outcome_exit_code(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(tmp_path)
    captured: dict[str, Any] = {}

    def _fake_run_loop(config: Any, **kwargs: Any) -> LoopOutcome:
        captured["config"] = config
        captured.update(kwargs)
        return LoopOutcome(state=LoopState.ABORTED, iterations_run=1)

    monkeypatch.setattr(commands, "run_loop", _fake_run_loop)

    exit_code = main(["run", "4", "--project-root", str(tmp_path), "--model", "opus", "--no-verbose"])

    assert exit_code == 130
    assert captured["iterations"] == 4
    assert captured["model"] == "opus"
    assert captured["verbose"] is False
    assert captured["project_root"] == tmp_path.resolve()
    assert captured["cancel_event"].is_set() is False
    assert captured["config"].project.name == "Demo"


def test_run_verbose_defaults_to_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_config(tmp_path)
    captured: dict[str, Any] = {}

    def _fake_run_loop(_config: Any, **kwargs: Any) -> LoopOutcome:
        captured.update(kwargs)
        return LoopOutcome(state=LoopState.COMPLETED, iterations_run=1)

    monkeypatch.setattr(commands, "run_loop", _fake_run_loop)

    assert main(["run", "1", "--project-root", str(tmp_path)]) == 0
    assert captured["verbose"] is None
    assert captured["model"] is None


def test_exec_forwards_command_and_arguments(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_config(tmp_path, "container:\n  name: box\nproject:\n  name: Demo\n")
    calls: list[tuple[str, list[str]]] = []

    def _fake_exec(name: str, command: list[str]) -> int:
        calls.append((name, list(command)))
        return 5

    monkeypatch.setattr(commands, "exec_in_container", _fake_exec)

    assert main(["exec", "--project-root", str(tmp_path), "ls", "-la", "/workspace"]) == 5
    assert calls == [("box", ["ls", "-la", "/workspace"])]


def test_start_reports_missing_token(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    _write_config(tmp_path)
    monkeypatch.delenv("CLAUDE_CODE_OAUTH_TOKEN", raising=False)

    assert main(["start", "--project-root", str(tmp_path), "--no-attach"]) == 1
    assert "ralph-loop start: ERROR CLAUDE_CODE_OAUTH_TOKEN is not set" in capsys.readouterr().err
