from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from shipwright.errors import ConfigurationError, PrerequisiteError
from shipwright.state.run_state import RunState


class PhaseKind(str, Enum):
    ARTIFACT = "artifact"
    BOOTSTRAP = "bootstrap"
    IMPLEMENTATION = "implementation"
    VERIFICATION = "verification"


@dataclass(slots=True, frozen=True)
class PhaseDefinition:
    id: str
    name: str
    kind: PhaseKind
    requires_workspace: bool
    artifact: str | None
    required_phases: tuple[str, ...] = ()
    prompt_template: str | None = None
    web_search: bool = False
    quality_gate: bool = False


PHASES: tuple[PhaseDefinition, ...] = (
    PhaseDefinition(
        "0", "Idea Intake", PhaseKind.ARTIFACT, False, "00_idea_intake.md",
        (), "00_idea_intake.md", web_search=True,
    ),
    PhaseDefinition(
        "1", "Problem Framing", PhaseKind.ARTIFACT, False, "01_problem_framing.md",
        ("0",), "01_problem_framing.md", web_search=True,
    ),
    PhaseDefinition(
        "2", "Workflows", PhaseKind.ARTIFACT, False, "02_workflows.md",
        ("0", "1"), "02_workflows.md", web_search=True,
    ),
    PhaseDefinition(
        "3", "Design & Theme", PhaseKind.ARTIFACT, False, "02b_design_theme.md",
        ("0", "1", "2"), "02b_design_theme.md", web_search=True,
    ),
    PhaseDefinition(
        "4", "PRD", PhaseKind.ARTIFACT, False, "03_prd.md",
        ("0", "1", "2"), "03_prd.md", web_search=True,
    ),
    PhaseDefinition(
        "5", "Repo Bootstrap", PhaseKind.BOOTSTRAP, False, "03b_repo_baseline.md",
        ("4",),
    ),
    PhaseDefinition(
        "6", "Feasibility Review", PhaseKind.ARTIFACT, True, "04_feasibility_review.md",
        ("0", "4", "5"), "04_feasibility_review.md", web_search=True,
    ),
    PhaseDefinition(
        "7", "Tech Spec", PhaseKind.ARTIFACT, True, "05_tech_spec.md",
        ("4", "5", "6"), "05_tech_spec.md", web_search=True,
    ),
    PhaseDefinition(
        "8", "Task Breakdown", PhaseKind.ARTIFACT, True, "06_task_breakdown.md",
        ("4", "6", "7"), "06_task_breakdown.md",
    ),
    PhaseDefinition(
        "9", "Implementation", PhaseKind.IMPLEMENTATION, True, None,
        ("4", "7", "8"), "07_implementation.md",
    ),
    PhaseDefinition(
        "10", "Test & Verify", PhaseKind.VERIFICATION, True, "07b_test_results.md",
        ("9",),
    ),
    PhaseDefinition(
        "11", "UX Reachability", PhaseKind.ARTIFACT, True, "07c_ux_reachability.md",
        ("2", "4", "8", "9", "10"), "07c_ux_reachability.md", quality_gate=True,
    ),
    PhaseDefinition(
        "12", "Audit", PhaseKind.ARTIFACT, True, "08_audit.md",
        ("4", "7", "8", "9", "10", "11"), "08_audit.md", quality_gate=True,
    ),
)

IMPLEMENTATION_PHASE_ID = "9"
VERIFICATION_PHASE_ID = "10"
REACHABILITY_PHASE_ID = "11"
AUDIT_PHASE_ID = "12"
TASK_BREAKDOWN_PHASE_ID = "8"


def validate_phase_graph(phases: Sequence[PhaseDefinition]) -> None:
    """Ids are unique and every prerequisite is declared earlier, so the graph is acyclic."""
    seen: set[str] = set()
    for phase in phases:
        if phase.id in seen:
            raise ConfigurationError(f"Duplicate phase id: {phase.id}")
        unknown = [req for req in phase.required_phases if req not in seen]
        if unknown:
            raise ConfigurationError(
                f"Phase {phase.id} depends on undeclared or later phases: {', '.join(unknown)}"
            )
        seen.add(phase.id)


validate_phase_graph(PHASES)


def get_phase(phase_id: str, phases: Sequence[PhaseDefinition] = PHASES) -> PhaseDefinition:
    for phase in phases:
        if phase.id == phase_id:
            return phase
    valid = ", ".join(phase.id for phase in phases)
    raise ConfigurationError(f'Invalid phase ID: "{phase_id}". Valid phases: {valid}')


def select_next_phase(
    run: RunState,
    phases: Sequence[PhaseDefinition] = PHASES,
    override: str | None = None,
) -> PhaseDefinition | None:
    """Return the override phase, else the first incomplete phase, else ``None``."""
    if override is not None:
        return get_phase(override, phases)
    for phase in phases:
        if phase.id not in run.completed_phases:
            return phase
    return None


def phases_from(
    start_id: str, phases: Sequence[PhaseDefinition] = PHASES
) -> list[PhaseDefinition]:
    start = get_phase(start_id, phases)
    index = list(phases).index(start)
    return list(phases[index:])


def missing_prerequisites(run: RunState, phase: PhaseDefinition) -> list[str]:
    return [req for req in phase.required_phases if req not in run.completed_phases]


def validate_prerequisites(
    run: RunState,
    phase: PhaseDefinition,
    *,
    artifacts_dir: Path | None = None,
    phases: Sequence[PhaseDefinition] = PHASES,
) -> None:
    missing = missing_prerequisites(run, phase)
    if missing:
        raise PrerequisiteError(
            f"Phase {phase.id} ({phase.name}) requires phases {', '.join(missing)} "
            "to be completed first.",
            phase_id=phase.id,
            missing=missing,
        )
    if artifacts_dir is None:
        return
    missing_files: list[str] = []
    for req in phase.required_phases:
        artifact = get_phase(req, phases).artifact
        if artifact and not (artifacts_dir / artifact).exists():
            missing_files.append(f"Phase {req}: {artifact}")
    if missing_files:
        raise PrerequisiteError(
            "Missing required artifacts:\n"
            + "\n".join(f"  - {item}" for item in missing_files)
            + "\nRun earlier phases first or check the artifacts directory.",
            phase_id=phase.id,
            missing=missing_files,
        )
