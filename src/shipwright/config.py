from __future__ import annotations

import json
import tomllib
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from shipwright.errors import ConfigurationError

EngineName = Literal["claude", "codex"]
Visibility = Literal["public", "private"]

DEFAULT_TEMPLATE = "jamesjlundin/full-stack-web-and-mobile-template"
MAX_TIMEOUT_MINUTES = 180


@dataclass(slots=True)
class AgentConfig:
    engine: EngineName = "claude"
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    claude_output_format: str = "stream-json"
    timeout_minutes: float = 0.0
    heartbeat_seconds: float = 30.0
    max_retries: int = 3
    retry_delays_seconds: list[float] = field(default_factory=lambda: [30.0, 60.0, 120.0])
    task_max_turns: int = 20
    repair_max_turns: int = 20


@dataclass(slots=True)
class BudgetConfig:
    budget_usd: float = 0.0
    warn_ratio: float = 0.8
    input_cost_per_mtok: float = 3.0
    output_cost_per_mtok: float = 15.0


@dataclass(slots=True)
class RepoConfig:
    owner: str = ""
    template: str = DEFAULT_TEMPLATE
    visibility: Visibility = "public"
    default_branch: str = "main"
    workspace_root: str = "workspaces"


@dataclass(slots=True)
class TasksConfig:
    chunk_size: int = 4
    max_target_files: int = 6
    max_acceptance_criteria: int = 6
    max_body_chars: int = 6000
    followups_per_task: int = 3
    max_dynamic_tasks: int = 20


@dataclass(slots=True)
class VerificationConfig:
    install_command: str = "pnpm install"
    typecheck_command: str = "pnpm typecheck"
    lint_command: str = "pnpm lint"
    build_command: str = "pnpm build"
    integration_command: str = "pnpm test:integration"
    e2e_command: str = "pnpm test:e2e"
    check_timeout_seconds: float = 900.0
    output_tail_chars: int = 4000
    default_repair_attempts: int = 2
    max_repair_attempts: int = 3


@dataclass(slots=True)
class ArtifactsConfig:
    claude_repair_attempts: int = 2
    codex_repair_attempts: int = 1
    backfill_attempts: int = 1
    max_quality_attempts: int = 2
    context_warning_tokens: int = 80_000


@dataclass(slots=True)
class WorkflowConfig:
    interactive: bool = False
    approval_phases: list[str] = field(default_factory=lambda: ["4", "5", "8"])
    prompts_dir: str = "prompts"
    runs_dir: str = "runs"


SECTIONS: dict[str, type] = {
    "agent": AgentConfig,
    "budget": BudgetConfig,
    "repo": RepoConfig,
    "tasks": TasksConfig,
    "verification": VerificationConfig,
    "artifacts": ArtifactsConfig,
    "workflow": WorkflowConfig,
}


def _build_section(section_cls: type, name: str, data: Any) -> Any:
    if data is None:
        return section_cls()
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Config section [{name}] must be a table.")
    known = {item.name for item in fields(section_cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown keys in [{name}]: {', '.join(unknown)}")
    return section_cls(**data)


@dataclass(slots=True)
class PipelineConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    repo: RepoConfig = field(default_factory=RepoConfig)
    tasks: TasksConfig = field(default_factory=TasksConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    artifacts: ArtifactsConfig = field(default_factory=ArtifactsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)

    @classmethod
    def default(cls) -> PipelineConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PipelineConfig:
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ConfigurationError(f"Unknown config sections: {', '.join(unknown)}")
        config = cls(
            **{
                name: _build_section(section_cls, name, data.get(name))
                for name, section_cls in SECTIONS.items()
            }
        )
        config.validate()
        return config

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {name: asdict(getattr(self, name)) for name in SECTIONS}

    @property
    def timeout_seconds(self) -> float | None:
        if self.agent.timeout_minutes <= 0:
            return None
        return self.agent.timeout_minutes * 60

    def validate(self) -> None:
        errors: list[str] = []
        if self.agent.engine not in ("claude", "codex"):
            errors.append('agent.engine must be "claude" or "codex"')
        if self.agent.claude_output_format not in ("stream-json", "json"):
            errors.append('agent.claude_output_format must be "stream-json" or "json"')
        if self.agent.timeout_minutes < 0 or self.agent.timeout_minutes > MAX_TIMEOUT_MINUTES:
            errors.append(f"agent.timeout_minutes must be between 0 and {MAX_TIMEOUT_MINUTES}")
        if self.agent.max_retries < 0:
            errors.append("agent.max_retries must not be negative")
        if self.budget.budget_usd < 0:
            errors.append("budget.budget_usd must not be negative")
        if not 0 < self.budget.warn_ratio <= 1:
            errors.append("budget.warn_ratio must be in (0, 1]")
        if self.repo.visibility not in ("public", "private"):
            errors.append('repo.visibility must be "public" or "private"')
        if self.tasks.chunk_size < 1:
            errors.append("tasks.chunk_size must be at least 1")
        if self.verification.default_repair_attempts < 0:
            errors.append("verification.default_repair_attempts must not be negative")
        if self.verification.max_repair_attempts < self.verification.default_repair_attempts:
            errors.append(
                "verification.max_repair_attempts must be >= verification.default_repair_attempts"
            )
        if errors:
            raise ConfigurationError("Invalid config:\n" + "\n".join(f"  - {e}" for e in errors))


def _parse_float(environ: Mapping[str, str], key: str) -> float | None:
    raw = environ.get(key, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative, got {raw!r}")
    return value


def apply_env_overrides(config: PipelineConfig, environ: Mapping[str, str]) -> PipelineConfig:
    input_rate = _parse_float(environ, "SHIPWRIGHT_INPUT_COST_PER_MTOK")
    if input_rate is not None:
        config.budget.input_cost_per_mtok = input_rate
    output_rate = _parse_float(environ, "SHIPWRIGHT_OUTPUT_COST_PER_MTOK")
    if output_rate is not None:
        config.budget.output_cost_per_mtok = output_rate
    budget = _parse_float(environ, "SHIPWRIGHT_BUDGET_USD")
    if budget is not None:
        config.budget.budget_usd = budget
    return config


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        # Keep floats typed as floats on reload.
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PipelineConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PipelineConfig:
    if not path.exists():
        return PipelineConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {path}: {exc}") from exc
    return PipelineConfig.from_dict(data)


def save_config(path: Path, config: PipelineConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
