from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from shipwright.errors import ManifestMissingError, ManifestParseError
from shipwright.tasks.manifest import parse_manifest

MIN_ARTIFACT_CHARS = 500
MAX_ARTIFACT_CHARS = 1_000_000
# Outputs of exactly this size are usually a buffer cut, not a finished document.
SUSPECT_OUTPUT_CHARS = 8192
META_WINDOW_CHARS = 350

REQUIRED_SECTIONS: dict[str, tuple[str, ...]] = {
    "0": ("App Name", "One-Line Description", "Problem Statement", "Target Users", "Core Features"),
    "1": ("Problem Decomposition", "User Personas", "Pain Points", "Core Value Proposition"),
    "2": (
        "Information Architecture",
        "Primary User Flows",
        "Screen Inventory",
        "Navigation Reachability Matrix",
    ),
    "3": ("Visual Direction", "Color System", "Typography System", "Theme Tokens"),
    "4": (
        "Executive Summary",
        "User Stories",
        "Functional Requirements",
        "Non-Functional Requirements",
        "Navigation & Reachability Requirements",
    ),
    "6": ("Template Fit Assessment", "Technical Risks", "Go / No-Go"),
    "7": (
        "Architecture Overview",
        "Data Model",
        "API Design",
        "Route-to-Screen Traceability Matrix",
        "Security Considerations",
    ),
    "8": (
        "Implementation Milestones",
        "Task List",
        "Routing Coverage Matrix",
        "Navigation Reachability Task Matrix",
        "Template Demo Removal & Rebranding",
        "Dependency Graph",
    ),
    "11": (
        "Journey Coverage Summary",
        "Discoverability Findings",
        "Branding Findings",
        "Reachability Verdict",
    ),
    "12": (
        "Requirements Coverage",
        "Discoverability & Branding Coverage",
        "Security Review",
        "Overall Assessment",
    ),
}

SECTION_VARIANTS: dict[str, re.Pattern[str]] = {
    "Non-Functional Requirements": re.compile(r"non[-\s]?functional requirements", re.IGNORECASE),
    "Go / No-Go": re.compile(r"go\s*/?\s*no[-\s]?go", re.IGNORECASE),
}

META_PATTERNS = (
    re.compile(r"^(I need|I'll|Let me|Here is|Here's|I would|I want to|I don't have)", re.M | re.I),
    re.compile(r"^(Sure|Certainly|Of course|Absolutely)[,!.]", re.M | re.I),
    re.compile(r"permission to (save|write|create)", re.I),
)
HEADING_LINE = re.compile(r"^#{1,3}\s", re.M)
OUTPUT_ENVELOPE = re.compile(r"<artifact_output>\s*(.*?)\s*</artifact_output>", re.I | re.S)
ARTIFACT_TAG = re.compile(r"<artifact[^>]*>\s*(.*?)\s*</artifact>", re.I | re.S)
MARKDOWN_FENCE = re.compile(r"```(?:markdown|md)?\n(.*?)```", re.I | re.S)
TRAILING_CHATTER = (
    re.compile(
        r"\n---\n(?:Let me know|Is there anything|I hope|Feel free|Would you like|If you)[^\n]*",
        re.S,
    ),
    re.compile(
        r"\n(?:Let me know|Is there anything|I hope|Feel free|Would you like|If you have)[^\n]*$",
        re.S,
    ),
)
END_MARKER = re.compile(r"\n?<!--\s*END_ARTIFACT\s*-->\s*$", re.I)


class WarningKind(str, Enum):
    TOO_SMALL = "too_small"
    TOO_LARGE = "too_large"
    META_COMMENTARY = "meta_commentary"
    NO_HEADING = "no_heading"
    TRUNCATED = "truncated"
    MISSING_SECTION = "missing_section"
    MALFORMED_ENVELOPE = "malformed_envelope"


# Warnings that make an artifact unusable downstream.
BLOCKING_KINDS = frozenset(
    {
        WarningKind.TOO_SMALL,
        WarningKind.META_COMMENTARY,
        WarningKind.MISSING_SECTION,
        WarningKind.MALFORMED_ENVELOPE,
    }
)
REPAIR_KINDS = BLOCKING_KINDS | {WarningKind.TRUNCATED}


@dataclass(slots=True, frozen=True)
class ArtifactWarning:
    kind: WarningKind
    message: str
    section: str | None = None

    def __str__(self) -> str:
        return self.message


def required_sections(phase_id: str) -> tuple[str, ...]:
    return REQUIRED_SECTIONS.get(phase_id, ())


def has_required_section(content: str, section: str) -> bool:
    if section.lower() in content.lower():
        return True
    variant = SECTION_VARIANTS.get(section)
    return bool(variant and variant.search(content))


def clean_artifact(raw: str) -> str:
    """Strip envelopes, preamble and sign-off chatter from an agent's document."""
    content = raw.replace("\r\n", "\n").strip()

    envelope = OUTPUT_ENVELOPE.search(content)
    if envelope and envelope.group(1):
        content = envelope.group(1).strip()
    tagged = ARTIFACT_TAG.search(content)
    if tagged and tagged.group(1):
        content = tagged.group(1).strip()

    fences = MARKDOWN_FENCE.findall(content)
    if len(fences) == 1:
        body = fences[0].strip()
        if body and HEADING_LINE.search(body):
            content = body

    heading = HEADING_LINE.search(content)
    if heading and heading.start() > 0:
        content = content[heading.start() :]

    for pattern in TRAILING_CHATTER:
        content = pattern.sub("", content)
    content = END_MARKER.sub("", content)
    return content.strip()


def looks_truncated(text: str) -> bool:
    trimmed = text.strip()
    return bool(trimmed) and bool(re.search(r"[a-zA-Z0-9]$", trimmed))


def validate_artifact(
    phase_id: str, content: str, *, stop_reason: str | None = None
) -> list[ArtifactWarning]:
    warnings: list[ArtifactWarning] = []
    trimmed = content.strip()

    if len(trimmed) < MIN_ARTIFACT_CHARS:
        warnings.append(
            ArtifactWarning(
                WarningKind.TOO_SMALL,
                f"Artifact for phase {phase_id} is suspiciously small ({len(content)} chars). "
                "May be an error message rather than a real artifact.",
            )
        )
    if len(content) > MAX_ARTIFACT_CHARS:
        warnings.append(
            ArtifactWarning(
                WarningKind.TOO_LARGE,
                f"Artifact for phase {phase_id} is very large ({len(content) / 1024:.0f}KB). "
                "This may cause context window issues in downstream phases.",
            )
        )

    window = trimmed[:META_WINDOW_CHARS]
    if any(pattern.search(window) for pattern in META_PATTERNS):
        warnings.append(
            ArtifactWarning(
                WarningKind.META_COMMENTARY,
                f"Phase {phase_id}: Artifact appears to start with AI meta-commentary. "
                "Content may need cleaning.",
            )
        )

    if not HEADING_LINE.search(trimmed):
        warnings.append(
            ArtifactWarning(
                WarningKind.NO_HEADING, f"Phase {phase_id}: Artifact contains no markdown headings."
            )
        )

    if stop_reason == "max_tokens":
        warnings.append(
            ArtifactWarning(
                WarningKind.TRUNCATED,
                f"Phase {phase_id}: Agent stopped at its output-length limit; artifact is truncated.",
            )
        )
    elif looks_truncated(trimmed):
        warnings.append(
            ArtifactWarning(
                WarningKind.TRUNCATED, f"Phase {phase_id}: Artifact appears truncated at the end."
            )
        )

    for section in required_sections(phase_id):
        if not has_required_section(content, section):
            warnings.append(
                ArtifactWarning(
                    WarningKind.MISSING_SECTION,
                    f'Phase {phase_id}: Missing expected section "{section}"',
                    section=section,
                )
            )

    if phase_id == "8":
        try:
            parse_manifest(content)
        except (ManifestMissingError, ManifestParseError) as exc:
            warnings.append(
                ArtifactWarning(WarningKind.MALFORMED_ENVELOPE, f"Phase {phase_id}: {exc}")
            )
    return warnings


def missing_sections(warnings: Sequence[ArtifactWarning]) -> list[str]:
    return [
        warning.section
        for warning in warnings
        if warning.kind is WarningKind.MISSING_SECTION and warning.section
    ]


def blocking_warnings(warnings: Sequence[ArtifactWarning]) -> list[ArtifactWarning]:
    return [warning for warning in warnings if warning.kind in BLOCKING_KINDS]


def should_repair(warnings: Sequence[ArtifactWarning], content: str) -> bool:
    if any(warning.kind in REPAIR_KINDS for warning in warnings):
        return True
    return len(content) == SUSPECT_OUTPUT_CHARS
