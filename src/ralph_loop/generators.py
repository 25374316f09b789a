"""Render the container, prompt and skill files from the resolved config."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from ralph_loop.constants import (
    CLAUDE_CONFIG_VOLUME,
    COMPOSE_FILE,
    CONTAINER_READY_MARKER,
    DEFAULT_CONTAINER_USER,
    DEFAULT_SHM_SIZE,
    DOCKERFILE_FILE,
    ENTRYPOINT_FILE,
    GENERATE_ONLY_CHOICES,
    GENERATED_HEADER,
    PROMPT_FILE,
    SKILL_NAMES,
)
from ralph_loop.models import ResolvedConfig
from ralph_loop.templates import render_template
from ralph_loop.utils import get_package_version

BASE_SYSTEM_PACKAGES = ("ca-certificates", "curl", "git", "pipx", "python3", "python3-venv")
NODE_IMAGE_PATTERN = re.compile(r"^node[:/]", re.IGNORECASE)
SSL_CERTS_MOUNT = "/tmp/ssl-certs"
DEFAULT_HOME_DIR = f"/home/{DEFAULT_CONTAINER_USER}"


@dataclass(frozen=True)
class GeneratedFile:
    path: str
    content: str


def _bullets(items: list[str], indent: str = "") -> str:
    return "\n".join(f"{indent}- {item}" for item in items)


def _resolve_host_path(host_path: str) -> str:
    """Compose runs from ``.ralph-container/``, so relative host paths move up one level."""
    return host_path if PurePosixPath(host_path).is_absolute() else f"../{host_path}"


# ---------------------------------------------------------------------------
# Dockerfile
# ---------------------------------------------------------------------------


def is_node_base_image(base_image: str) -> bool:
    return bool(NODE_IMAGE_PATTERN.match(base_image))


def _package_spec() -> str:
    version = get_package_version()
    return "ralph-loop" if version == "latest" else f"ralph-loop=={version}"


def _playwright_install(mode: str | None) -> str:
    if mode is None:
        return ""
    lines = [
        "ENV PLAYWRIGHT_BROWSERS_PATH=/ms-playwright",
        "RUN npx -y playwright@latest install --with-deps chromium \\",
        "    && chmod -R a+rx /ms-playwright",
    ]
    if mode == "mcp":
        lines.append("RUN npm install -g @playwright/mcp@latest")
    else:
        lines.append("RUN npm install -g @playwright/cli@latest")
    return "\n".join(lines) + "\n"


def generate_dockerfile(config: ResolvedConfig) -> str:
    container = config.container
    packages = sorted({*BASE_SYSTEM_PACKAGES, *container.system_packages})
    node_install = ""
    if not is_node_base_image(container.base_image):
        node_install = (
            "RUN curl -fsSL https://deb.nodesource.com/setup_22.x | bash - \\\n"
            "    && apt-get install -y --no-install-recommends nodejs \\\n"
            "    && rm -rf /var/lib/apt/lists/*\n"
        )
    # node images already ship a non-root user; other bases need one created.
    user_creation = ""
    if container.user == DEFAULT_CONTAINER_USER:
        user_creation = f"RUN useradd --create-home --shell /bin/bash {container.user}\n"
    return render_template(
        "Dockerfile.tmpl",
        {
            "generated_header": GENERATED_HEADER,
            "base_image": container.base_image,
            "system_packages": " ".join(packages),
            "node_install": node_install,
            "playwright_install": _playwright_install(container.playwright),
            "root_setup": "\n".join(container.hooks.root_setup) + "\n" if container.hooks.root_setup else "",
            "user_creation": user_creation,
            "user": container.user,
            "home_dir": container.home_dir,
            "package_spec": _package_spec(),
            "user_setup": "\n".join(container.hooks.user_setup) + "\n" if container.hooks.user_setup else "",
        },
    )


# ---------------------------------------------------------------------------
# docker-compose.yml
# ---------------------------------------------------------------------------


def _persist_volumes(config: ResolvedConfig) -> dict[str, str]:
    home_dir = config.container.home_dir
    volumes = {CLAUDE_CONFIG_VOLUME: f"{home_dir}/.claude"}
    for name, path in config.container.persist_volumes.items():
        volumes[name] = path.replace(DEFAULT_HOME_DIR, home_dir, 1)
    return volumes


def generate_compose(config: ResolvedConfig) -> str:
    container = config.container
    persist_volumes = _persist_volumes(config)

    mounts = [f"{name}:{path}" for name, path in persist_volumes.items()]
    mounts.extend(container.shadow_volumes)
    mounts.extend(container.volumes)
    if container.ssl_certs:
        mounts.append(f"{_resolve_host_path(container.ssl_certs)}:{SSL_CERTS_MOUNT}:ro")

    options: list[str] = []
    if container.shm_size != DEFAULT_SHM_SIZE:
        options.append(f"    shm_size: '{container.shm_size}'")
    if container.capabilities:
        options.append("    cap_add:")
        options.append(_bullets(list(container.capabilities), indent="      "))

    return render_template(
        "docker-compose.yml.tmpl",
        {
            "generated_header": GENERATED_HEADER,
            "container_name": container.name,
            "home_dir": container.home_dir,
            "service_volumes": _bullets(mounts, indent="      "),
            "service_env": _bullets([f"{key}={value}" for key, value in container.env.items()], indent="      "),
            "network_mode": container.network_mode,
            "service_options": "\n".join(options),
            "volume_declarations": "\n".join(f"  {name}:" for name in persist_volumes),
        },
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def generate_entrypoint(config: ResolvedConfig) -> str:
    hooks = config.container.hooks.entrypoint_setup
    return render_template(
        "entrypoint.sh.tmpl",
        {
            "generated_header": GENERATED_HEADER,
            "ready_marker": CONTAINER_READY_MARKER,
            "entrypoint_setup": "\n".join(hooks) + "\n" if hooks else "",
        },
    )


# ---------------------------------------------------------------------------
# Prompt and skills
# ---------------------------------------------------------------------------


def _backpressure_list(config: ResolvedConfig) -> str:
    commands = config.project.backpressure_commands
    if not commands:
        return "- No quality checks are configured. Make sure the project still builds."
    return _bullets([f"{command.name}: `{command.command}`" for command in commands])


def _browser_verification(config: ResolvedConfig) -> str:
    if not config.container.playwright:
        return ""
    lines = [
        "## Browser Verification",
        "",
        "For any story that changes the UI, verify it in a real browser before committing.",
    ]
    if config.container.playwright == "mcp":
        lines.append("Use the Playwright MCP tools to navigate to the page, interact with it and take a screenshot.")
    else:
        lines.append("Use the `playwright-cli` command to open the page, interact with it and take a screenshot.")
    if config.project.open_app_skill:
        lines.append(f"Start the app with the `{config.project.open_app_skill}` skill first.")
    lines.append("A UI story is NOT complete until browser verification passes.")
    return "\n".join(lines) + "\n"


def _browser_criteria(config: ResolvedConfig) -> str:
    if not config.container.playwright:
        return ""
    return "- For UI stories: verify in browser using Playwright"


def generate_prompt(config: ResolvedConfig) -> str:
    project = config.project
    return render_template(
        "ralph-prompt.md.tmpl",
        {
            "generated_header": GENERATED_HEADER,
            "project_name": project.name,
            "project_description": f"{project.description.strip()}\n" if project.description.strip() else "",
            "project_context": project.context.strip() or "_No additional project context provided._",
            "backpressure_list": _backpressure_list(config),
            "browser_verification": _browser_verification(config),
            "completion_signal": config.defaults.completion_signal,
        },
    )


def skill_output_path(config: ResolvedConfig, skill: str) -> str:
    if config.output.mode == "uac":
        return f"{config.output.uac_templates_dir}/skills/{skill}/SKILL.md"
    return f".claude/skills/{skill}/SKILL.md"


def render_skills(config: ResolvedConfig) -> list[GeneratedFile]:
    values = {
        "project_name": config.project.name,
        "project_context": config.project.context.strip() or "_No additional project context provided._",
        "backpressure_list": _backpressure_list(config),
        "browser_criteria": _browser_criteria(config),
    }
    return [
        GeneratedFile(
            path=skill_output_path(config, skill),
            content=render_template(f"skills/{skill}/SKILL.md", values),
        )
        for skill in SKILL_NAMES
    ]


def _write_files(project_root: Path, files: list[GeneratedFile]) -> None:
    for generated in files:
        target = project_root / generated.path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(generated.content, encoding="utf-8")
        if generated.path == ENTRYPOINT_FILE:
            target.chmod(0o755)
        print(f"Written: {generated.path}")


def generate_skills(config: ResolvedConfig, project_root: Path) -> list[GeneratedFile]:
    files = render_skills(config)
    _write_files(project_root, files)
    return files


def generate_all(
    config: ResolvedConfig,
    project_root: Path,
    *,
    dry_run: bool = False,
    only: str | None = None,
) -> list[GeneratedFile]:
    """Generate every artifact (or only one group); returns the files in write order."""
    if only is not None and only not in GENERATE_ONLY_CHOICES:
        raise ValueError(f"only must be one of {', '.join(GENERATE_ONLY_CHOICES)}; got {only!r}")

    files: list[GeneratedFile] = []
    if only in (None, "container"):
        files.append(GeneratedFile(DOCKERFILE_FILE, generate_dockerfile(config)))
        files.append(GeneratedFile(ENTRYPOINT_FILE, generate_entrypoint(config)))
        files.append(GeneratedFile(COMPOSE_FILE, generate_compose(config)))
    if only in (None, "prompt"):
        files.append(GeneratedFile(PROMPT_FILE, generate_prompt(config)))
    if only in (None, "skills"):
        files.extend(render_skills(config))

    if dry_run:
        for generated in files:
            print(f"[dry-run] Would write: {generated.path}")
        return files

    _write_files(project_root, files)
    return files
