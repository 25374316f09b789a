"""Ralph loop data models: exceptions, dataclasses and coercion helpers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value if str(item).strip())


def _coerce_str_mapping(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): str(item) for key, item in value.items()}


class ConfigError(RuntimeError):
    """Raised when the project configuration is missing or invalid."""


class TemplateError(RuntimeError):
    """Raised when a bundled template cannot be rendered."""


class ContainerError(RuntimeError):
    """Raised when the container runtime cannot be driven."""


class LoopError(RuntimeError):
    """Raised when the iteration loop cannot be set up."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContainerHooks:
    root_setup: tuple[str, ...] = ()
    user_setup: tuple[str, ...] = ()
    entrypoint_setup: tuple[str, ...] = ()


@dataclass(frozen=True)
class ContainerConfig:
    name: str
    base_image: str
    user: str
    system_packages: tuple[str, ...]
    playwright: str | None  # None, "cli" or "mcp"
    network_mode: str
    env: dict[str, str]
    shm_size: str
    capabilities: tuple[str, ...]
    volumes: tuple[str, ...]
    shadow_volumes: tuple[str, ...]
    persist_volumes: dict[str, str]
    hooks: ContainerHooks
    ssl_certs: str | None = None

    @property
    def home_dir(self) -> str:
        return f"/home/{self.user}"


@dataclass(frozen=True)
class SetupConfig:
    pre_start_command: str = ""


@dataclass(frozen=True)
class DefaultsConfig:
    agent: str
    model: str
    verbose: bool
    sleep_between_ms: int
    completion_signal: str


@dataclass(frozen=True)
class BackpressureCommand:
    name: str
    command: str


@dataclass(frozen=True)
class ProjectConfig:
    name: str
    description: str = ""
    context: str = ""
    backpressure_commands: tuple[BackpressureCommand, ...] = ()
    open_app_skill: str = ""


@dataclass(frozen=True)
class OutputConfig:
    mode: str  # "direct" | "uac"
    uac_templates_dir: str


@dataclass(frozen=True)
class ResolvedConfig:
    container: ContainerConfig
    setup: SetupConfig
    defaults: DefaultsConfig
    project: ProjectConfig
    output: OutputConfig


# ---------------------------------------------------------------------------
# Agent stream messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class ToolUseContent:
    name: str
    input: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SystemMessage:
    kind: str = "system"


@dataclass(frozen=True)
class UserMessage:
    """Tool-result echo sent back to the agent; carries nothing we display."""

    kind: str = "user"


@dataclass(frozen=True)
class AssistantMessage:
    content: tuple[TextContent | ToolUseContent, ...] = ()
    kind: str = "assistant"


@dataclass(frozen=True)
class ResultMessage:
    result: str
    cost: float | None
    kind: str = "result"


@dataclass(frozen=True)
class UnrecognizedMessage:
    kind: str


StreamMessage = (
    SystemMessage | UserMessage | AssistantMessage | ResultMessage | UnrecognizedMessage
)


@dataclass(frozen=True)
class ProgressResult:
    output: str
    turns: int
    cost: float | None


# ---------------------------------------------------------------------------
# Agent execution and loop outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentExecResult:
    stdout: str
    stderr: str
    exit_code: int
    aborted: bool
    read_errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    turns: int
    cost: float | None


class LoopState(enum.Enum):
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"
    FAILED = "failed"


LOOP_STATE_EXIT_CODES = {
    LoopState.COMPLETED: 0,
    LoopState.EXHAUSTED: 1,
    LoopState.ABORTED: 130,
    LoopState.FAILED: 1,
}


@dataclass(frozen=True)
class LoopOutcome:
    state: LoopState
    iterations_run: int
    records: tuple[IterationRecord, ...] = ()
    message: str = ""

    @property
    def exit_code(self) -> int:
        return LOOP_STATE_EXIT_CODES[self.state]
