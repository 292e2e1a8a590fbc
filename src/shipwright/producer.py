from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from shipwright.artifacts import (
    ArtifactWarning,
    blocking_warnings,
    clean_artifact,
    missing_sections,
    should_repair,
    validate_artifact,
)
from shipwright.backends.base import AgentBackend, AgentOptions, AgentResult
from shipwright.config import ArtifactsConfig
from shipwright.costs import CostTracker
from shipwright.errors import InvalidArtifactError
from shipwright.phases import PhaseDefinition
from shipwright.prompts import build_artifact_repair_prompt, build_missing_sections_prompt
from shipwright.state.run_state import RunState

logger = logging.getLogger(__name__)

# (no workspace, workspace)
INITIAL_TURNS = (12, 15)
REPAIR_TURNS = (8, 10)
BACKFILL_TURNS = (6, 8)


def max_turns_for(phase: PhaseDefinition, turns: tuple[int, int]) -> int:
    return turns[1] if phase.requires_workspace else turns[0]


@dataclass(slots=True)
class ProducedArtifact:
    content: str
    warnings: list[ArtifactWarning] = field(default_factory=list)
    repair_attempts: int = 0
    backfilled: bool = False


class ArtifactProducer:
    """One agent call for a phase document, then bounded repair and backfill.

    Repairs rewrite the whole document; the backfill asks only for the sections
    still missing and appends them untouched.
    """

    def __init__(
        self,
        backend: AgentBackend,
        costs: CostTracker,
        config: ArtifactsConfig,
        *,
        engine: str,
        persist: Callable[[RunState], None] | None = None,
    ) -> None:
        self.backend = backend
        self.costs = costs
        self.config = config
        self.engine = engine
        self._persist = persist

    @property
    def repair_attempts(self) -> int:
        if self.engine == "claude":
            return self.config.claude_repair_attempts
        return self.config.codex_repair_attempts

    async def _invoke(
        self, run: RunState, phase: PhaseDefinition, prompt: str, options: AgentOptions
    ) -> AgentResult:
        self.costs.check_budget(run)
        result = await self.backend.invoke(prompt, options)
        self.costs.record(run, phase.id, result)
        if self._persist is not None:
            self._persist(run)
        return result

    async def produce(
        self, run: RunState, phase: PhaseDefinition, prompt: str, options: AgentOptions
    ) -> ProducedArtifact:
        result = await self._invoke(run, phase, prompt, options)
        return await self.refine(run, phase, result.output, options, stop_reason=result.stop_reason)

    async def refine(
        self,
        run: RunState,
        phase: PhaseDefinition,
        raw_output: str,
        options: AgentOptions,
        *,
        stop_reason: str | None = None,
    ) -> ProducedArtifact:
        content = clean_artifact(raw_output)
        warnings = validate_artifact(phase.id, content, stop_reason=stop_reason)
        produced = ProducedArtifact(content=content, warnings=warnings)

        if should_repair(warnings, content):
            for attempt in range(1, self.repair_attempts + 1):
                logger.info(
                    "phase %s: artifact repair %d/%d (%s)",
                    phase.id,
                    attempt,
                    self.repair_attempts,
                    "; ".join(str(warning) for warning in warnings),
                )
                repair_options = replace(
                    options,
                    web_search=False,
                    max_turns=max_turns_for(phase, REPAIR_TURNS),
                    label=f"{phase.id}-repair-{attempt}",
                )
                result = await self._invoke(
                    run,
                    phase,
                    build_artifact_repair_prompt(phase, content, [str(w) for w in warnings]),
                    repair_options,
                )
                content = clean_artifact(result.output)
                warnings = validate_artifact(phase.id, content, stop_reason=result.stop_reason)
                produced.repair_attempts = attempt
                if not should_repair(warnings, content):
                    break

        for _ in range(self.config.backfill_attempts):
            missing = missing_sections(warnings)
            if not missing:
                break
            logger.info("phase %s: backfilling missing sections: %s", phase.id, ", ".join(missing))
            backfill_options = replace(
                options,
                web_search=False,
                max_turns=max_turns_for(phase, BACKFILL_TURNS),
                label=f"{phase.id}-section-backfill",
            )
            result = await self._invoke(
                run, phase, build_missing_sections_prompt(phase, content, missing), backfill_options
            )
            supplement = clean_artifact(result.output)
            if supplement:
                content = f"{content.strip()}\n\n{supplement.strip()}\n"
                produced.backfilled = True
            warnings = validate_artifact(phase.id, content)

        produced.content = content
        produced.warnings = warnings
        blocking = blocking_warnings(warnings)
        if blocking:
            raise InvalidArtifactError(
                f"Phase {phase.id} ({phase.name}) artifact is still invalid after "
                f"{produced.repair_attempts} repair attempt(s):\n"
                + "\n".join(f"  - {warning}" for warning in blocking),
                phase_id=phase.id,
                warnings=[str(warning) for warning in blocking],
            )
        for warning in warnings:
            logger.warning("phase %s: %s", phase.id, warning)
        return produced
