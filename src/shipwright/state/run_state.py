from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any
from uuid import uuid4

from shipwright.errors import ConfigurationError, RunStateError
from shipwright.state.store import EnvelopeFile, utcnow_iso
from shipwright.validators import validate_owner, validate_repo_name, validate_template_repo

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
STATE_FILE = "state.json"


def new_run_id() -> str:
    return f"{utcnow_iso().replace(':', '').replace('-', '')[:15]}-{uuid4().hex[:6]}"


@dataclass(slots=True)
class RunState:
    run_id: str
    idea: str
    engine: str = "claude"
    workspace_path: str | None = None
    repo_url: str | None = None
    repo_name: str | None = None
    repo_owner: str = ""
    template_repo: str = ""
    visibility: str = "public"
    default_branch: str = "main"
    completed_phases: list[str] = field(default_factory=list)
    current_phase: str | None = None
    total_actual_cost_usd: float = 0.0
    total_estimated_cost_usd: float = 0.0
    total_effective_cost_usd: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    phase_costs_actual: dict[str, float] = field(default_factory=dict)
    phase_costs_estimated: dict[str, float] = field(default_factory=dict)
    phase_costs_effective: dict[str, float] = field(default_factory=dict)
    last_completed_task: int = 0
    task_decomposition_events: int = 0
    dynamic_tasks_added: int = 0
    completed_verification_stages: list[str] = field(default_factory=list)
    quality_gate_attempts: dict[str, int] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    schema_version: int = SCHEMA_VERSION

    def mark_phase_complete(self, phase_id: str) -> None:
        if phase_id not in self.completed_phases:
            self.completed_phases.append(phase_id)
        self.current_phase = phase_id

    def is_complete(self, phase_id: str) -> bool:
        return phase_id in self.completed_phases

    @property
    def workspace(self) -> Path | None:
        return Path(self.workspace_path) if self.workspace_path else None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        known = {item.name for item in fields(cls)}
        extra = sorted(set(data) - known)
        if extra:
            logger.debug("ignoring unknown run state keys: %s", ", ".join(extra))
        payload = {key: value for key, value in data.items() if key in known}
        try:
            return cls(**payload)
        except TypeError as exc:
            raise RunStateError(f"Run state is missing required fields: {exc}") from exc

    def validate(self) -> None:
        errors: list[str] = []
        if not self.run_id:
            errors.append("run_id is required")
        if not self.idea:
            errors.append("idea is required")
        if not self.template_repo:
            errors.append("template_repo is required")
        if self.engine not in ("claude", "codex"):
            errors.append('engine must be "claude" or "codex"')
        if self.visibility not in ("public", "private"):
            errors.append('visibility must be "public" or "private"')
        if self.last_completed_task < 0:
            errors.append("last_completed_task must not be negative")
        checks: list[tuple[Any, str]] = [(validate_template_repo, self.template_repo)]
        if self.repo_owner:
            checks.append((validate_owner, self.repo_owner))
        if self.repo_name:
            checks.append((validate_repo_name, self.repo_name))
        for check, value in checks:
            if not value:
                continue
            try:
                check(value)
            except ConfigurationError as exc:
                errors.append(str(exc))
        if errors:
            raise RunStateError("Invalid run state:\n" + "\n".join(f"  - {e}" for e in errors))


def migrate_legacy(data: dict[str, Any]) -> dict[str, Any]:
    """Upgrade payloads written by older releases to the current field set."""
    migrated = dict(data)
    if "completed_phases" in migrated:
        migrated["completed_phases"] = [str(item) for item in migrated["completed_phases"]]
    if isinstance(migrated.get("current_phase"), (int, float)):
        migrated["current_phase"] = str(migrated["current_phase"])
    if "phase10_completed_stages" in migrated:
        stages = migrated.pop("phase10_completed_stages") or []
        migrated.setdefault("completed_verification_stages", list(stages))

    legacy_total = migrated.pop("total_cost_usd", None)
    legacy_phase_costs = migrated.pop("phase_costs", None)
    if "total_actual_cost_usd" not in migrated and legacy_total is not None:
        migrated["total_actual_cost_usd"] = float(legacy_total)
    if "phase_costs_actual" not in migrated and isinstance(legacy_phase_costs, dict):
        migrated["phase_costs_actual"] = {
            str(key): float(value) for key, value in legacy_phase_costs.items()
        }

    if "total_effective_cost_usd" not in migrated:
        migrated["total_effective_cost_usd"] = float(
            migrated.get("total_actual_cost_usd", 0.0)
        ) + float(migrated.get("total_estimated_cost_usd", 0.0))
    if "phase_costs_effective" not in migrated:
        effective: dict[str, float] = {}
        for bucket in ("phase_costs_actual", "phase_costs_estimated"):
            for key, value in (migrated.get(bucket) or {}).items():
                effective[str(key)] = effective.get(str(key), 0.0) + float(value)
        migrated["phase_costs_effective"] = effective
    migrated["schema_version"] = SCHEMA_VERSION
    return migrated


class RunStateStore:
    """Persists one run's state under ``<run_dir>/state.json``."""

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = run_dir
        self.file = EnvelopeFile(run_dir / STATE_FILE, schema_version=SCHEMA_VERSION)

    def exists(self) -> bool:
        return self.file.exists()

    def load(self) -> RunState:
        envelope = self.file.read()
        if envelope is None:
            raise RunStateError(f"Run state not found: {self.file.path}")
        data = envelope["data"]
        if not isinstance(data, dict):
            raise RunStateError(f"Run state in {self.file.path} is not an object.")
        if envelope["schema_version"] < SCHEMA_VERSION:
            logger.info(
                "migrating run state %s from schema %s",
                self.file.path,
                envelope["schema_version"],
            )
            data = migrate_legacy(data)
        run = RunState.from_dict(data)
        run.validate()
        return run

    def save(self, run: RunState) -> None:
        run.updated_at = utcnow_iso()
        self.file.write(run.to_dict())
