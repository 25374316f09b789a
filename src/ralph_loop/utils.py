"""Ralph loop utility functions: timestamps, operator log, gitignore and version."""

from __future__ import annotations

from datetime import datetime, timezone
from importlib import metadata as importlib_metadata
from pathlib import Path

from ralph_loop.constants import (
    GITIGNORE_ENTRIES,
    GITIGNORE_MARKER_END,
    GITIGNORE_MARKER_START,
    LOG_FILE,
)

DISTRIBUTION_NAME = "ralph-loop"


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(project_root: Path, message: str) -> None:
    log_path = project_root / LOG_FILE
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


# ---------------------------------------------------------------------------
# Gitignore bookkeeping
# ---------------------------------------------------------------------------


def _gitignore_block() -> str:
    return "\n".join([GITIGNORE_MARKER_START, *GITIGNORE_ENTRIES, GITIGNORE_MARKER_END])


def ensure_gitignore_block(project_root: Path) -> bool:
    """Append the ralph-loop block to ``.gitignore`` unless it is already there.

    Returns True when the file was written.
    """
    gitignore_path = project_root / ".gitignore"
    content = ""
    if gitignore_path.exists():
        content = gitignore_path.read_text(encoding="utf-8")
    if GITIGNORE_MARKER_START in content:
        return False

    existing = content.rstrip()
    block = _gitignore_block()
    updated = f"{existing}\n\n{block}\n" if existing else f"{block}\n"
    gitignore_path.write_text(updated, encoding="utf-8")
    return True


# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------


def get_package_version() -> str:
    try:
        return importlib_metadata.version(DISTRIBUTION_NAME)
    except importlib_metadata.PackageNotFoundError:
        return "latest"
