"""Archive the previous run's PRD and progress log when the branch changes."""

from __future__ import annotations

import json
import shutil
import sys
from pathlib import Path

from ralph_loop.constants import (
    ARCHIVE_DIR,
    BRANCH_PREFIX,
    LAST_BRANCH_FILE,
    PRD_BRANCH_FIELD,
    PRD_FILE,
    PROGRESS_FILE,
    PROGRESS_LOG_TITLE,
    RALPH_DIR,
)
from ralph_loop.utils import _append_log, _utc_now, _utc_today


def _progress_header() -> str:
    return f"# {PROGRESS_LOG_TITLE}\nStarted: {_utc_now()}\n---\n"


def _read_prd_branch(prd_path: Path) -> str | None:
    """Return the PRD branch name ('' when unset), or None if the PRD is unreadable."""
    try:
        payload = json.loads(prd_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    branch = payload.get(PRD_BRANCH_FIELD)
    return branch.strip() if isinstance(branch, str) else ""


def _track_current_branch(project_root: Path) -> None:
    prd_path = project_root / PRD_FILE
    if not prd_path.exists():
        return
    branch = _read_prd_branch(prd_path)
    if not branch:
        return
    marker_path = project_root / LAST_BRANCH_FILE
    marker_path.parent.mkdir(parents=True, exist_ok=True)
    marker_path.write_text(f"{branch}\n", encoding="utf-8")


def archive_folder_name(
    previous_branch: str,
    *,
    prefix: str = BRANCH_PREFIX,
    today: str | None = None,
) -> str:
    date = today or _utc_today()
    folder = previous_branch
    if prefix and folder.startswith(prefix):
        folder = folder[len(prefix):]
    return f"{date}-{folder}"


def archive_if_branch_changed(project_root: Path, *, today: str | None = None) -> Path | None:
    """Snapshot the previous run when ``prd.json`` names a new branch.

    Returns the archive folder when one was written. Missing or malformed
    state is never an error: the marker is (re)written when possible and the
    call returns None.
    """
    prd_path = project_root / PRD_FILE
    marker_path = project_root / LAST_BRANCH_FILE
    if not prd_path.exists() or not marker_path.exists():
        _track_current_branch(project_root)
        return None

    current_branch = _read_prd_branch(prd_path)
    if current_branch is None:
        return None
    try:
        last_branch = marker_path.read_text(encoding="utf-8").strip()
    except OSError:
        last_branch = ""

    if not current_branch or not last_branch or current_branch == last_branch:
        _track_current_branch(project_root)
        return None

    archive_folder = project_root / ARCHIVE_DIR / archive_folder_name(last_branch, today=today)
    print(f"Archiving previous run: {last_branch}", file=sys.stderr)
    archive_folder.mkdir(parents=True, exist_ok=True)

    progress_path = project_root / PROGRESS_FILE
    for source in (prd_path, progress_path):
        try:
            shutil.copy2(source, archive_folder / source.name)
        except FileNotFoundError:
            continue
    print(f"Archived to: {archive_folder}", file=sys.stderr)
    _append_log(project_root, f"archived branch={last_branch} to {archive_folder} (new branch={current_branch})")

    progress_path.parent.mkdir(parents=True, exist_ok=True)
    progress_path.write_text(_progress_header(), encoding="utf-8")

    _track_current_branch(project_root)
    return archive_folder


def ensure_progress_file(project_root: Path) -> bool:
    """Create ``.ralph/progress.txt`` with a fresh header if it does not exist."""
    (project_root / RALPH_DIR).mkdir(parents=True, exist_ok=True)
    progress_path = project_root / PROGRESS_FILE
    if progress_path.exists():
        return False
    progress_path.write_text(_progress_header(), encoding="utf-8")
    return True
