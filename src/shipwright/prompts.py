from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from pathlib import Path

from shipwright.artifacts import required_sections
from shipwright.phases import PhaseDefinition

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{([A-Z0-9_]+)\}\}")
NO_TEMPLATE_CONTEXT = "(no template context available)"
NOT_AVAILABLE = "(not available)"
CHARS_PER_TOKEN = 4

MANIFEST_CONTRACT = """\
## Machine-Readable Task Manifest

After the human-readable plan, emit every task exactly once inside a fenced block
tagged `task-manifest` containing JSON of the form:

```task-manifest
{"tasks": [{"id": "T-1", "title": "...", "priority": "P0", "complexity": "M",
  "milestone": "M1", "description": "...", "targetFiles": ["..."],
  "acceptanceCriteria": ["..."], "testExpectations": ["..."],
  "dependencies": "none", "implementationNotes": "..."}]}
```

Reference tasks by these ids in the Routing Coverage Matrix and the Navigation
Reachability Task Matrix."""

FOLLOWUP_CONTRACT = """\
## Follow-up Work

If finishing this task revealed necessary work that is out of its scope, list it
at the end of your reply (at most a few items) as:

```follow-up-tasks
{"tasks": [{"title": "...", "description": "...", "targetFiles": ["..."],
  "acceptanceCriteria": ["..."]}]}
```

Omit the block when there is nothing to add."""


def estimate_tokens(text: str) -> int:
    return round(len(text.encode("utf-8")) / CHARS_PER_TOKEN)


def render_template(template: str, replacements: Mapping[str, str]) -> str:
    """Substitute ``{{KEY}}`` placeholders; unknown keys are left untouched."""

    def _sub(match: re.Match[str]) -> str:
        return replacements.get(match.group(1), match.group(0))

    return PLACEHOLDER.sub(_sub, template)


def artifact_placeholder(artifact_file: str) -> str:
    """``03b_repo_baseline.md`` becomes ``ARTIFACT_03B``."""
    return "ARTIFACT_" + artifact_file.split("_", 1)[0].upper()


def wrap_artifact(phase_id: str, content: str) -> str:
    return f'<artifact phase="{phase_id}">\n{content}\n</artifact>'


class PromptLibrary:
    """Loads phase prompt templates from ``prompts_dir``.

    A phase without a template file gets a generic prompt assembled from the
    same replacements, so a run never depends on template content being present.
    """

    def __init__(self, prompts_dir: Path) -> None:
        self.prompts_dir = prompts_dir

    def template_context(self) -> str:
        path = self.prompts_dir / "template_context.md"
        if path.exists():
            return path.read_text(encoding="utf-8")
        return NO_TEMPLATE_CONTEXT

    def load_template(self, name: str | None) -> str | None:
        if not name:
            return None
        path = self.prompts_dir / name
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def build(self, phase: PhaseDefinition, replacements: Mapping[str, str]) -> str:
        template = self.load_template(phase.prompt_template)
        if template is None:
            logger.warning(
                "no prompt template %s in %s; using the built-in prompt for phase %s",
                phase.prompt_template,
                self.prompts_dir,
                phase.id,
            )
            template = default_template(phase, replacements)
        prompt = render_template(template, replacements)
        if phase.id == "8" and "task-manifest" not in prompt:
            prompt = f"{prompt.rstrip()}\n\n{MANIFEST_CONTRACT}\n"
        if phase.id == "9" and "follow-up-tasks" not in prompt:
            prompt = f"{prompt.rstrip()}\n\n{FOLLOWUP_CONTRACT}\n"
        return prompt


def default_template(phase: PhaseDefinition, replacements: Mapping[str, str]) -> str:
    lines = [
        f"You are producing phase {phase.id} ({phase.name}) of a product build pipeline.",
        "",
        "## Product Idea",
        "{{IDEA}}",
        "",
        "## Template Context",
        "{{TEMPLATE_CONTEXT}}",
        "",
    ]
    previous = [key for key in sorted(replacements) if key.startswith("ARTIFACT_")]
    if previous:
        lines.append("## Previous Artifacts")
        lines.extend(f"{{{{{key}}}}}" for key in previous)
        lines.append("")
    if phase.requires_workspace:
        lines.extend(
            ["## Workspace Changes", "{{GIT_DIFF}}", "", "## Test Results", "{{TEST_RESULTS}}", ""]
        )
    if phase.id == "9":
        lines.extend(
            [
                "## Task",
                "{{TASK}}",
                "",
                "Implement this task in the repository in the current directory.",
                "Read relevant files before editing and keep to existing conventions.",
            ]
        )
        return "\n".join(lines)
    sections = required_sections(phase.id)
    if sections:
        lines.append("Write a markdown document with these H2 sections:")
        lines.extend(f"- {section}" for section in sections)
        lines.append("")
    lines.append("Output only the final markdown document, starting with its first heading.")
    return "\n".join(lines)


def build_artifact_repair_prompt(
    phase: PhaseDefinition, previous_output: str, warnings: Sequence[str]
) -> str:
    return "\n".join(
        [
            f"You are repairing a markdown artifact for phase {phase.id}: {phase.name}.",
            "",
            "The previous output did not satisfy structural checks.",
            "",
            "Validation warnings:",
            *(f"- {warning}" for warning in warnings),
            "",
            "Previous output:",
            "```markdown",
            previous_output,
            "```",
            "",
            "Rewrite the entire artifact from scratch so all required sections are fully present.",
            "Start immediately with the first H2 heading of the document.",
            "Do not include preamble, explanation, or tool logs.",
            "Do not truncate output.",
            "Output only the final markdown document.",
        ]
    )


def build_missing_sections_prompt(
    phase: PhaseDefinition, base_document: str, missing_sections: Sequence[str]
) -> str:
    return "\n".join(
        [
            f"You are filling missing sections for phase {phase.id}: {phase.name}.",
            "",
            "Current artifact (do not rewrite this entire document):",
            "```markdown",
            base_document,
            "```",
            "",
            f"Missing required sections: {', '.join(missing_sections)}",
            "",
            "Output only the missing sections as H2 headings with complete content.",
            "Do not repeat sections that already exist.",
            "Do not include preamble or closing remarks.",
        ]
    )


def build_test_repair_prompt(
    *,
    stage_name: str,
    failing_checks: Sequence[str],
    test_results: str,
    delta_summary: str,
    prd: str,
    tech_spec: str,
    task_breakdown: str,
) -> str:
    lines = [
        "You are a senior software engineer fixing a repository after automated "
        "verification failures.",
        "",
        "Your objective is to make the failing checks pass without changing product scope.",
        "Do not add placeholder hacks, and do not silence failing checks.",
        "",
        f"Verification stage: {stage_name}",
        f"Failing checks: {', '.join(failing_checks)}",
        "",
    ]
    if delta_summary:
        lines.extend(["## Change Since Previous Attempt", delta_summary, ""])
    lines.extend(
        [
            "## Test Results",
            test_results,
            "",
            "## PRD",
            prd,
            "",
            "## Tech Spec",
            tech_spec,
            "",
            "## Task Breakdown",
            task_breakdown,
            "",
            "## Instructions",
            "- Read relevant files before editing.",
            "- Make the smallest safe code changes required to pass checks.",
            "- Install dependencies if needed by repo scripts.",
            "- Run the failing checks locally before finishing.",
            "- Keep code style consistent with existing repo conventions.",
            "- Do not commit; the pipeline verifies and commits your changes.",
            "- Output a concise summary of changes made.",
        ]
    )
    return "\n".join(lines)


def build_quality_remediation_prompt(
    phase: PhaseDefinition, artifact: str, verdict: str, test_results: str
) -> str:
    return "\n".join(
        [
            f"The {phase.name} review (phase {phase.id}) did not pass; its verdict reads "
            f"as: {verdict}.",
            "",
            "Fix the product code in the repository in the current directory so the "
            "findings below are resolved. Do not edit the review itself.",
            "",
            "## Review",
            artifact,
            "",
            "## Latest Test Results",
            test_results,
            "",
            "## Instructions",
            "- Address every blocking finding; skip cosmetic suggestions.",
            "- Keep the existing verification checks passing.",
            "- Do not commit; the pipeline verifies and commits your changes.",
            "- Output a concise summary of changes made.",
        ]
    )
