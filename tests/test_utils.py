from __future__ import annotations

import re
from pathlib import Path

import pytest

from ralph_loop import utils
from ralph_loop.utils import _append_log, _compact_log_text, ensure_gitignore_block, get_package_version


def test_ensure_gitignore_block_creates_file(tmp_path: Path) -> None:
    assert ensure_gitignore_block(tmp_path) is True

    content = (tmp_path / ".gitignore").read_text(encoding="utf-8")
    assert content == "# >>> ralph-loop >>>\n/ralph-loop.overrides.*\n# <<< ralph-loop <<<\n"


def test_ensure_gitignore_block_appends_after_blank_line(tmp_path: Path) -> None:
    gitignore = tmp_path / ".gitignore"
    gitignore.write_text("node_modules/\ndist/\n\n\n", encoding="utf-8")

    assert ensure_gitignore_block(tmp_path) is True

    content = gitignore.read_text(encoding="utf-8")
    assert content.startswith("node_modules/\ndist/\n\n# >>> ralph-loop >>>\n")
    assert content.endswith("# <<< ralph-loop <<<\n")


def test_ensure_gitignore_block_is_idempotent(tmp_path: Path) -> None:
    gitignore = tmp_path / ".gitignore"
    gitignore.write_text("node_modules/\n", encoding="utf-8")
    ensure_gitignore_block(tmp_path)
    first = gitignore.read_text(encoding="utf-8")

    assert ensure_gitignore_block(tmp_path) is False
    assert gitignore.read_text(encoding="utf-8") == first


def test_append_log_writes_timestamped_lines(tmp_path: Path) -> None:
    _append_log(tmp_path, "loop start")
    _append_log(tmp_path, "loop end")

    lines = (tmp_path / ".ralph" / "logs" / "ralph-loop.log").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z loop start$", lines[0])


def test_compact_log_text_collapses_whitespace_and_truncates() -> None:
    assert _compact_log_text("  a\n  b\tc  ") == "a b c"
    assert _compact_log_text("x" * 20, limit=5) == "xxxxx..."


def test_get_package_version_falls_back_to_latest(monkeypatch: pytest.MonkeyPatch) -> None:
    def _missing(_name: str) -> str:
        raise utils.importlib_metadata.PackageNotFoundError(_name)

    monkeypatch.setattr(utils.importlib_metadata, "version", _missing)
    assert get_package_version() == "latest"

    monkeypatch.setattr(utils.importlib_metadata, "version", lambda _name: "0.4.2")
    assert get_package_version() == "0.4.2"
