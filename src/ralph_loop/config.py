"""Load, merge, validate and resolve ``ralph-loop.yaml``."""

from __future__ import annotations

import copy
import dataclasses
import json
from functools import lru_cache
from importlib import resources as importlib_resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from ralph_loop.constants import (
    CONFIG_FILE_NAMES,
    DEFAULT_AGENT,
    DEFAULT_BASE_IMAGE,
    DEFAULT_COMPLETION_SIGNAL,
    DEFAULT_CONTAINER_NAME,
    DEFAULT_CONTAINER_USER,
    DEFAULT_MODEL,
    DEFAULT_NETWORK_MODE,
    DEFAULT_OUTPUT_MODE,
    DEFAULT_PERSIST_VOLUMES,
    DEFAULT_SHM_SIZE,
    DEFAULT_SLEEP_BETWEEN_MS,
    DEFAULT_UAC_TEMPLATES_DIR,
    OVERRIDES_FILE_NAMES,
    PLAYWRIGHT_CAPABILITY,
    PLAYWRIGHT_MODES,
    PLAYWRIGHT_SHM_SIZE,
)
from ralph_loop.models import (
    BackpressureCommand,
    ConfigError,
    ContainerConfig,
    ContainerHooks,
    DefaultsConfig,
    OutputConfig,
    ProjectConfig,
    ResolvedConfig,
    SetupConfig,
    _coerce_bool,
    _coerce_str_mapping,
    _coerce_str_tuple,
)

SCHEMA_RESOURCE = ("schemas", "config.schema.json")


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def merge_configs(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge ``overrides`` onto ``base`` without mutating either.

    Lists replace, mappings merge recursively, scalars replace and ``None``
    override values are skipped.
    """
    merged = copy.deepcopy(base)
    for key, override_value in overrides.items():
        if override_value is None:
            continue
        base_value = merged.get(key)
        if isinstance(override_value, dict) and isinstance(base_value, dict):
            merged[key] = merge_configs(base_value, override_value)
        else:
            merged[key] = copy.deepcopy(override_value)
    return merged


# ---------------------------------------------------------------------------
# Schema validation
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _load_schema() -> dict[str, Any]:
    schema_dir, schema_name = SCHEMA_RESOURCE
    resource = importlib_resources.files("ralph_loop").joinpath(schema_dir).joinpath(schema_name)
    return json.loads(resource.read_text(encoding="utf-8"))


def _format_error_path(error_path: Any) -> str:
    parts = [str(part) for part in error_path]
    return ".".join(parts) if parts else "(root)"


def validate_config(raw: Any) -> list[str]:
    """Return ``<dotted.path>: <message>`` issues, sorted by path."""
    validator = Draft202012Validator(_load_schema())
    issues: list[str] = []
    for error in sorted(validator.iter_errors(raw), key=lambda item: _format_error_path(item.path)):
        issues.append(f"{_format_error_path(error.path)}: {error.message}")
    return issues


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, dict) else {}


def _coerce_playwright(value: Any) -> str | None:
    if value is None or value is False:
        return None
    if value is True:
        return PLAYWRIGHT_MODES[0]
    if isinstance(value, str) and value in PLAYWRIGHT_MODES:
        return value
    raise ConfigError(
        f"container.playwright must be true, false or one of {', '.join(PLAYWRIGHT_MODES)}; got {value!r}"
    )


def _resolve_container(raw: dict[str, Any]) -> ContainerConfig:
    container = _section(raw, "container")
    hooks = _section(container, "hooks")
    persist_volumes = container.get("persist_volumes")
    ssl_certs = container.get("ssl_certs")
    return ContainerConfig(
        name=str(container.get("name") or DEFAULT_CONTAINER_NAME),
        base_image=str(container.get("base_image") or DEFAULT_BASE_IMAGE),
        user=str(container.get("user") or DEFAULT_CONTAINER_USER),
        system_packages=_coerce_str_tuple(container.get("system_packages")),
        playwright=_coerce_playwright(container.get("playwright", False)),
        network_mode=str(container.get("network_mode") or DEFAULT_NETWORK_MODE),
        env=_coerce_str_mapping(container.get("env")),
        shm_size=str(container.get("shm_size") or DEFAULT_SHM_SIZE),
        capabilities=_coerce_str_tuple(container.get("capabilities")),
        volumes=_coerce_str_tuple(container.get("volumes")),
        shadow_volumes=_coerce_str_tuple(container.get("shadow_volumes")),
        persist_volumes=(
            _coerce_str_mapping(persist_volumes)
            if isinstance(persist_volumes, dict)
            else dict(DEFAULT_PERSIST_VOLUMES)
        ),
        hooks=ContainerHooks(
            root_setup=_coerce_str_tuple(hooks.get("root_setup")),
            user_setup=_coerce_str_tuple(hooks.get("user_setup")),
            entrypoint_setup=_coerce_str_tuple(hooks.get("entrypoint_setup")),
        ),
        ssl_certs=str(ssl_certs) if ssl_certs else None,
    )


def _resolve_defaults(raw: dict[str, Any]) -> DefaultsConfig:
    defaults = _section(raw, "defaults")
    sleep_between_ms = defaults.get("sleep_between_ms", DEFAULT_SLEEP_BETWEEN_MS)
    return DefaultsConfig(
        agent=str(defaults.get("agent") or DEFAULT_AGENT),
        model=str(defaults.get("model") or DEFAULT_MODEL),
        verbose=_coerce_bool(defaults.get("verbose"), default=False),
        sleep_between_ms=max(0, int(sleep_between_ms)),
        completion_signal=str(defaults.get("completion_signal") or DEFAULT_COMPLETION_SIGNAL),
    )


def _resolve_project(raw: dict[str, Any]) -> ProjectConfig:
    project = _section(raw, "project")
    commands = project.get("backpressure_commands")
    backpressure = tuple(
        BackpressureCommand(name=str(entry["name"]), command=str(entry["command"]))
        for entry in (commands if isinstance(commands, list) else [])
        if isinstance(entry, dict)
    )
    return ProjectConfig(
        name=str(project.get("name", "")),
        description=str(project.get("description") or ""),
        context=str(project.get("context") or ""),
        backpressure_commands=backpressure,
        open_app_skill=str(project.get("open_app_skill") or ""),
    )


def apply_playwright_defaults(config: ResolvedConfig) -> ResolvedConfig:
    """Give Playwright-enabled containers a 2gb shm and the SYS_ADMIN capability."""
    container = config.container
    if not container.playwright:
        return config
    shm_size = PLAYWRIGHT_SHM_SIZE if container.shm_size == DEFAULT_SHM_SIZE else container.shm_size
    capabilities = container.capabilities
    if PLAYWRIGHT_CAPABILITY not in capabilities:
        capabilities = (*capabilities, PLAYWRIGHT_CAPABILITY)
    return dataclasses.replace(
        config,
        container=dataclasses.replace(container, shm_size=shm_size, capabilities=capabilities),
    )


def resolve_config(raw: dict[str, Any]) -> ResolvedConfig:
    """Validate ``raw`` and turn it into a ``ResolvedConfig`` with defaults applied."""
    issues = validate_config(raw)
    if issues:
        raise ConfigError(_format_issues("invalid ralph-loop config", issues))
    setup = _section(raw, "setup")
    output = _section(raw, "output")
    resolved = ResolvedConfig(
        container=_resolve_container(raw),
        setup=SetupConfig(pre_start_command=str(setup.get("pre_start_command") or "")),
        defaults=_resolve_defaults(raw),
        project=_resolve_project(raw),
        output=OutputConfig(
            mode=str(output.get("mode") or DEFAULT_OUTPUT_MODE),
            uac_templates_dir=str(output.get("uac_templates_dir") or DEFAULT_UAC_TEMPLATES_DIR),
        ),
    )
    return apply_playwright_defaults(resolved)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _format_issues(headline: str, issues: list[str]) -> str:
    return "\n".join([f"{headline}:", *(f"  {issue}" for issue in issues)])


def _find_file(project_root: Path, names: tuple[str, ...]) -> Path | None:
    for name in names:
        candidate = project_root / name
        if candidate.is_file():
            return candidate
    return None


def _read_yaml_mapping(path: Path) -> dict[str, Any] | None:
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"could not read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"could not parse {path}: {exc}") from exc
    if loaded is None:
        return None
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a YAML mapping")
    return loaded


def find_config_file(project_root: Path) -> Path | None:
    return _find_file(project_root, CONFIG_FILE_NAMES)


def load_config(project_root: Path) -> ResolvedConfig:
    """Read ``ralph-loop.yaml`` plus optional overrides and resolve them."""
    config_path = find_config_file(project_root)
    base = _read_yaml_mapping(config_path) if config_path is not None else None
    if not base:
        raise ConfigError(
            f"no ralph-loop config found in {project_root}; run `ralph-loop init` to create one"
        )

    overrides_path = _find_file(project_root, OVERRIDES_FILE_NAMES)
    overrides = _read_yaml_mapping(overrides_path) if overrides_path is not None else None
    merged = merge_configs(base, overrides) if overrides else base

    issues = validate_config(merged)
    if issues:
        headline = f"invalid ralph-loop config in {config_path.name}"
        if overrides and not validate_config(base):
            headline = f"{headline} after merging overrides from {overrides_path.name}"
        raise ConfigError(_format_issues(headline, issues))
    return resolve_config(merged)
