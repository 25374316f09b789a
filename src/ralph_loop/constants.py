"""Ralph loop constants: file layout, config defaults and agent settings."""

from __future__ import annotations

import re
from pathlib import Path

CONFIG_FILE_NAMES = ("ralph-loop.yaml", "ralph-loop.yml")
OVERRIDES_FILE_NAMES = ("ralph-loop.overrides.yaml", "ralph-loop.overrides.yml")

# Work-tracking state (owned by the loop and the prd skill).
RALPH_DIR = ".ralph"
PRD_FILE = f"{RALPH_DIR}/prd.json"
PROGRESS_FILE = f"{RALPH_DIR}/progress.txt"
LAST_BRANCH_FILE = f"{RALPH_DIR}/.last-branch"
ARCHIVE_DIR = f"{RALPH_DIR}/archive"
LOG_FILE = f"{RALPH_DIR}/logs/ralph-loop.log"
PRD_BRANCH_FIELD = "branchName"
BRANCH_PREFIX = "ralph/"
PROGRESS_LOG_TITLE = "Ralph Progress Log"

# Generated container artifacts.
CONTAINER_DIR = ".ralph-container"
PROMPT_FILE = f"{CONTAINER_DIR}/ralph-prompt.md"
COMPOSE_FILE = f"{CONTAINER_DIR}/docker-compose.yml"
DOCKERFILE_FILE = f"{CONTAINER_DIR}/Dockerfile"
ENTRYPOINT_FILE = f"{CONTAINER_DIR}/entrypoint.sh"
SKILL_NAMES = ("prd", "ralph")
GENERATE_ONLY_CHOICES = ("container", "prompt", "skills")

CONTAINER_READY_MARKER = "/tmp/entrypoint-ready"
CONTAINER_READY_TIMEOUT_SECONDS = 5 * 60
CONTAINER_POLL_INTERVAL_SECONDS = 1.0
OAUTH_TOKEN_ENV = "CLAUDE_CODE_OAUTH_TOKEN"
DOCKERENV_MARKER = Path("/.dockerenv")

GITIGNORE_MARKER_START = "# >>> ralph-loop >>>"
GITIGNORE_MARKER_END = "# <<< ralph-loop <<<"
GITIGNORE_ENTRIES = ("/ralph-loop.overrides.*",)

# Config defaults.
DEFAULT_CONTAINER_NAME = "ralph-container"
DEFAULT_BASE_IMAGE = "node:22-bookworm"
DEFAULT_CONTAINER_USER = "sandbox"
DEFAULT_NETWORK_MODE = "host"
DEFAULT_SHM_SIZE = "64m"
PLAYWRIGHT_SHM_SIZE = "2gb"
PLAYWRIGHT_CAPABILITY = "SYS_ADMIN"
PLAYWRIGHT_MODES = ("cli", "mcp")
CLAUDE_CONFIG_VOLUME = "ralph-claude-config"
DEFAULT_PERSIST_VOLUMES = {CLAUDE_CONFIG_VOLUME: "/home/sandbox/.claude"}
DEFAULT_AGENT = "claude"
SUPPORTED_AGENTS = (DEFAULT_AGENT,)
DEFAULT_MODEL = "sonnet"
DEFAULT_SLEEP_BETWEEN_MS = 2000
DEFAULT_COMPLETION_SIGNAL = "RALPH_WORK_FULLY_DONE"
OUTPUT_MODES = ("direct", "uac")
DEFAULT_OUTPUT_MODE = "direct"
DEFAULT_UAC_TEMPLATES_DIR = ".universal-ai-config"

# Agent process handling.
AGENT_READ_CHUNK_SIZE = 65536
AGENT_POLL_INTERVAL_SECONDS = 0.1
DEFAULT_KILL_TIMEOUT_SECONDS = 10.0

# Stream-json tool families, keyed by the tool input field we summarize.
FILE_TOOLS = frozenset({"Read", "Write", "Edit", "MultiEdit"})
PATTERN_TOOLS = frozenset({"Glob", "Grep"})
SHELL_TOOLS = frozenset({"Bash"})
SHELL_COMMAND_PREVIEW_CHARS = 80

TEMPLATE_TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

GENERATED_HEADER = "Generated by ralph-loop. Do not edit; change ralph-loop.yaml and run `ralph-loop generate`."

SAMPLE_CONFIG = """\
# ralph-loop configuration. Regenerate files with `ralph-loop generate`.
container:
  name: my-ralph-container
  base_image: node:22-bookworm
  # playwright: true
  # shadow_volumes:
  #   - /workspace/node_modules
  hooks:
    root_setup: []
    #  - RUN npm install -g pnpm@10
    user_setup: []
    #  - RUN corepack enable

project:
  name: My Project
  description: ""
  context: |
    - **Monorepo** managed with npm
    - **TypeScript strict mode** everywhere
  backpressure_commands:
    - name: Build
      command: npm run build
    - name: Lint
      command: npm run lint
    - name: Typecheck
      command: tsc --noEmit
"""
