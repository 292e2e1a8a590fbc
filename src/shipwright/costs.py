"""Cost and budget accounting.

Reported agent cost is authoritative. Token-based estimates are a fallback
for backends that do not report cost and never replace a reported figure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from shipwright.backends.base import AgentResult
from shipwright.errors import BudgetExceededError
from shipwright.state.run_state import RunState

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CostModel:
    input_per_mtok: float = 3.0
    output_per_mtok: float = 15.0

    def estimate(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self.input_per_mtok + output_tokens * self.output_per_mtok
        ) / 1_000_000


@dataclass(slots=True, frozen=True)
class CostEntry:
    phase_id: str
    actual_usd: float = 0.0
    estimated_usd: float = 0.0

    @property
    def effective_usd(self) -> float:
        return self.actual_usd + self.estimated_usd


def _add(bucket: dict[str, float], key: str, amount: float) -> None:
    bucket[key] = bucket.get(key, 0.0) + amount


def record_cost(run: RunState, phase_id: str, result: AgentResult, model: CostModel) -> CostEntry:
    run.total_input_tokens += result.input_tokens
    run.total_output_tokens += result.output_tokens

    if result.cost_usd is not None and result.cost_usd > 0:
        entry = CostEntry(phase_id=phase_id, actual_usd=result.cost_usd)
        run.total_actual_cost_usd += entry.actual_usd
        _add(run.phase_costs_actual, phase_id, entry.actual_usd)
    elif result.input_tokens > 0 or result.output_tokens > 0:
        entry = CostEntry(
            phase_id=phase_id,
            estimated_usd=model.estimate(result.input_tokens, result.output_tokens),
        )
        run.total_estimated_cost_usd += entry.estimated_usd
        _add(run.phase_costs_estimated, phase_id, entry.estimated_usd)
    else:
        return CostEntry(phase_id=phase_id)

    run.total_effective_cost_usd += entry.effective_usd
    _add(run.phase_costs_effective, phase_id, entry.effective_usd)
    logger.info(
        "phase %s cost: $%.4f actual, $%.4f estimated (run total $%.4f)",
        phase_id,
        entry.actual_usd,
        entry.estimated_usd,
        run.total_effective_cost_usd,
    )
    return entry


def check_budget(run: RunState, limit_usd: float | None, warn_ratio: float = 0.8) -> None:
    if not limit_usd or limit_usd <= 0:
        return
    spent = run.total_effective_cost_usd
    if spent >= limit_usd:
        raise BudgetExceededError(
            f"Budget exceeded: ${spent:.2f} spent of ${limit_usd:.2f} limit. "
            "Raise the budget or resume with a new limit.",
            spent_usd=spent,
            limit_usd=limit_usd,
        )
    if spent >= limit_usd * warn_ratio:
        logger.warning(
            "Budget warning: $%.2f of $%.2f used (%.0f%%)",
            spent,
            limit_usd,
            spent / limit_usd * 100,
        )


class CostTracker:
    def __init__(
        self,
        model: CostModel,
        budget_usd: float | None = None,
        *,
        warn_ratio: float = 0.8,
    ) -> None:
        self.model = model
        self.budget_usd = budget_usd
        self.warn_ratio = warn_ratio

    def record(self, run: RunState, phase_id: str, result: AgentResult) -> CostEntry:
        return record_cost(run, phase_id, result, self.model)

    def check_budget(self, run: RunState) -> None:
        check_budget(run, self.budget_usd, self.warn_ratio)


def render_cost_table(run: RunState) -> str:
    phase_ids = sorted(
        set(run.phase_costs_actual) | set(run.phase_costs_estimated),
        key=_phase_sort_key,
    )
    lines = [
        "| Phase | Actual | Estimated | Effective |",
        "|---|---:|---:|---:|",
    ]
    for phase_id in phase_ids:
        lines.append(
            f"| {phase_id} | ${run.phase_costs_actual.get(phase_id, 0.0):.4f} "
            f"| ${run.phase_costs_estimated.get(phase_id, 0.0):.4f} "
            f"| ${run.phase_costs_effective.get(phase_id, 0.0):.4f} |"
        )
    lines.append(
        f"| **Total** | ${run.total_actual_cost_usd:.4f} "
        f"| ${run.total_estimated_cost_usd:.4f} "
        f"| ${run.total_effective_cost_usd:.4f} |"
    )
    return "\n".join(lines)


def _phase_sort_key(phase_id: str) -> tuple[int, str]:
    head = phase_id.split("-", 1)[0]
    return (int(head), phase_id) if head.isdigit() else (10_000, phase_id)
