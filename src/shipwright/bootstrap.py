from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from shipwright.errors import BootstrapError, ConfigurationError
from shipwright.validators import validate_owner, validate_repo_name, validate_template_repo

logger = logging.getLogger(__name__)

BASELINE_ARTIFACT = "03b_repo_baseline.md"
TREE_DEPTH = 4
TREE_EXCLUDES = frozenset({"node_modules", ".git", ".next", "dist", ".expo"})
KEY_CONFIG_FILES = (
    "package.json",
    "tsconfig.json",
    "docker-compose.yml",
    "docker-compose.yaml",
    "Dockerfile",
    ".env.example",
    ".env.local.example",
    "README.md",
    "next.config.js",
    "next.config.ts",
    "next.config.mjs",
    "vite.config.ts",
    "tailwind.config.ts",
    "tailwind.config.js",
    "drizzle.config.ts",
    "prisma/schema.prisma",
    "supabase/config.toml",
    "turbo.json",
    "pnpm-workspace.yaml",
    "app.json",
    "expo.config.js",
    "expo.config.ts",
    "pyproject.toml",
)
MONOREPO_DIRS = ("apps", "packages", "services")
CONFIG_MAX_LINES = 100
README_MAX_LINES = 200


@dataclass(slots=True, frozen=True)
class BootstrapRequest:
    repo_name: str
    owner: str
    template: str
    workspace: Path
    visibility: str = "public"


@dataclass(slots=True, frozen=True)
class BootstrapResult:
    workspace: Path
    repo_url: str


class RepoBootstrapper(Protocol):
    def bootstrap(self, request: BootstrapRequest) -> BootstrapResult: ...


def slugify(text: str, max_length: int = 50) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")


def resolve_workspace(root: Path, repo_name: str) -> Path:
    """Return ``root/repo_name``, refusing names that resolve outside ``root``."""
    validate_repo_name(repo_name)
    base = root.resolve()
    candidate = (base / repo_name).resolve()
    if candidate == base or base not in candidate.parents:
        raise ConfigurationError(
            f"Repo name {repo_name!r} resolves outside the workspace root {base}."
        )
    return candidate


class GhRepoBootstrapper:
    """Creates a GitHub repository from a template with ``gh`` and clones it."""

    def __init__(self, binary: str = "gh") -> None:
        self.binary = binary

    def bootstrap(self, request: BootstrapRequest) -> BootstrapResult:
        validate_owner(request.owner)
        validate_repo_name(request.repo_name)
        validate_template_repo(request.template)
        if request.visibility not in ("public", "private"):
            raise ConfigurationError(f"Invalid visibility: {request.visibility!r}")
        if request.workspace.exists():
            raise BootstrapError(f"Workspace already exists: {request.workspace}")

        full_name = f"{request.owner}/{request.repo_name}"
        parent = request.workspace.parent
        parent.mkdir(parents=True, exist_ok=True)
        logger.info("creating %s from template %s", full_name, request.template)
        command = [
            self.binary,
            "repo",
            "create",
            full_name,
            "--template",
            request.template,
            f"--{request.visibility}",
            "--clone",
        ]
        try:
            proc = subprocess.run(command, cwd=parent, text=True, capture_output=True)
        except FileNotFoundError as exc:
            raise BootstrapError(f"{self.binary} CLI not found on PATH.") from exc
        if proc.returncode != 0:
            raise BootstrapError(
                f"gh repo create {full_name} failed (exit {proc.returncode}): "
                f"{proc.stderr.strip() or proc.stdout.strip()}"
            )
        cloned = parent / request.repo_name
        if not cloned.exists():
            raise BootstrapError(f"gh reported success but {cloned} was not cloned.")
        repo_url = f"https://github.com/{full_name}"
        logger.info("repo created: %s (cloned to %s)", repo_url, cloned)
        return BootstrapResult(workspace=cloned, repo_url=repo_url)


def detect_owner(binary: str = "gh") -> str:
    try:
        proc = subprocess.run(
            [binary, "api", "user", "--jq", ".login"], text=True, capture_output=True
        )
    except FileNotFoundError as exc:
        raise BootstrapError(f"{binary} CLI not found on PATH.") from exc
    owner = proc.stdout.strip()
    if proc.returncode != 0 or not owner:
        raise BootstrapError(
            "Could not detect the GitHub owner. Pass --owner or run `gh auth login`."
        )
    return owner


def file_tree(workspace: Path, depth: int = TREE_DEPTH) -> list[str]:
    entries: list[str] = ["."]
    for current, dirs, files in os.walk(workspace):
        relative = Path(current).relative_to(workspace)
        level = 0 if relative == Path(".") else len(relative.parts)
        dirs[:] = sorted(name for name in dirs if name not in TREE_EXCLUDES)
        if level >= depth:
            dirs[:] = []
            continue
        for name in [*dirs, *sorted(files)]:
            entries.append(f"./{(relative / name).as_posix()}")
    return sorted(entries)


def _read_head(path: Path, max_lines: int) -> str | None:
    if not path.is_file():
        return None
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    if len(lines) > max_lines:
        return "\n".join(lines[:max_lines]) + f"\n... (truncated, {len(lines)} total lines)"
    return "\n".join(lines)


def key_config_files(workspace: Path) -> dict[str, str]:
    configs: dict[str, str] = {}
    for relative in KEY_CONFIG_FILES:
        content = _read_head(workspace / relative, CONFIG_MAX_LINES)
        if content is not None:
            configs[relative] = content
    for subdir in MONOREPO_DIRS:
        root = workspace / subdir
        if not root.is_dir():
            continue
        for entry in sorted(root.iterdir()):
            content = _read_head(entry / "package.json", CONFIG_MAX_LINES)
            if content is not None:
                configs[f"{subdir}/{entry.name}/package.json"] = content
    return configs


def summarize_repo_baseline(workspace: Path) -> str:
    parts = ["# Repo Baseline Summary", "", "## File Tree", "", "```"]
    parts.extend(file_tree(workspace))
    parts.extend(["```", ""])

    configs = key_config_files(workspace)
    if configs:
        parts.extend(["## Key Configuration Files", ""])
        for relative, content in configs.items():
            fence = Path(relative).suffix.lstrip(".") or "text"
            parts.extend([f"### {relative}", "", f"```{fence}", content, "```", ""])

    readme = _read_head(workspace / "README.md", README_MAX_LINES)
    if readme:
        parts.extend(["## README Excerpts", "", readme, ""])
    return "\n".join(parts).rstrip() + "\n"
