"""Pattern matching over agent-authored prose.

Everything here reads free-form markdown written by the generation agent, so
it is deliberately strict: a verdict that cannot be read unambiguously is
reported as such and callers treat it as a failure.

Accepted verdict spellings, matched case-insensitively on the value that
follows a verdict label (``**Overall verdict**: PASS``, ``Ship readiness - Ready``,
or a ``## Overall Assessment`` heading followed by its first non-empty line):

* pass: ``pass``, ``passed``, ``go``, ``ready``, ``ship``, ``approved``, ``ok``
* fail: ``fail``, ``failed``, ``no-go``, ``no go``, ``not ready``, ``blocked``,
  ``do not ship``, ``rejected``
* hedged wording (``conditional``, ``partial``, ``with caveats``, ``mostly``)
  makes the line ambiguous.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from enum import Enum

HEADING = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_FAIL_WORDS = re.compile(
    r"\b(?:fail(?:ed|s|ing)?|no[\s-]?go|not\s+ready(?:\s+(?:to\s+)?ship)?|blocked|do\s+not\s+ship|reject(?:ed)?)\b",
    re.IGNORECASE,
)
_PASS_WORDS = re.compile(r"\b(?:pass(?:ed|es)?|go|ready|ship|approved|ok)\b", re.IGNORECASE)
_HEDGE_WORDS = re.compile(
    r"\b(?:conditional(?:ly)?|partial(?:ly)?|with\s+caveats|mostly|pending)\b", re.IGNORECASE
)


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    AMBIGUOUS = "ambiguous"
    MISSING = "missing"

    @property
    def passed(self) -> bool:
        return self is Verdict.PASS


def _clean_heading(text: str) -> str:
    text = re.sub(r"^\d+(?:\.\d+)*[.)]?\s+", "", text.strip())
    return text.strip("*_` ").strip()


def extract_section(text: str, heading: str) -> str:
    """Return the body under ``heading`` up to the next heading of the same or higher level.

    Numbered headings (``## 5. Routing Coverage Matrix``) match their bare title.
    Returns an empty string when the heading is absent.
    """
    wanted = heading.strip().lower()
    lines = text.splitlines()
    start: int | None = None
    level = 0
    for index, line in enumerate(lines):
        match = HEADING.match(line)
        if not match:
            continue
        if start is None:
            if _clean_heading(match.group(2)).lower() == wanted:
                start = index + 1
                level = len(match.group(1))
        elif len(match.group(1)) <= level:
            return "\n".join(lines[start:index]).strip()
    if start is None:
        return ""
    return "\n".join(lines[start:]).strip()


def task_ref_pattern(task_ids: Iterable[str]) -> re.Pattern[str]:
    """Build the pattern that recognises task identifiers in prose.

    Identifiers with an alphabetic prefix (``T-12``, ``AUTH-3``) are matched by
    prefix; purely numeric identifiers are only recognised after the word ``Task``.
    """
    prefixes: set[str] = set()
    numeric = False
    for task_id in task_ids:
        match = re.match(r"^([A-Za-z][A-Za-z_]*-?)\d", task_id)
        if match:
            prefixes.add(match.group(1))
        elif task_id.isdigit() or re.match(r"^\d+(?:-[SF]\d+)+$", task_id):
            numeric = True
    alternatives = [
        rf"\b{re.escape(prefix)}\d+(?:-[SF]\d+)*\b"
        for prefix in sorted(prefixes, key=len, reverse=True)
    ]
    if numeric:
        alternatives.append(r"(?<=Task )\d+(?:-[SF]\d+)*\b")
    if not alternatives:
        return re.compile(r"(?!x)x")
    return re.compile("|".join(f"(?:{item})" for item in alternatives))


def extract_task_refs(text: str, pattern: re.Pattern[str]) -> list[str]:
    refs: list[str] = []
    for match in pattern.finditer(text):
        if match.group(0) not in refs:
            refs.append(match.group(0))
    return refs


def _label_pattern(label: str) -> re.Pattern[str]:
    words = r"\s+".join(re.escape(word) for word in label.split())
    return re.compile(
        r"^[\s>*_#-]*(?:\d+(?:\.\d+)*[.)]?\s+)?[*_]*"
        + words
        + r"[\s*_`]*(?:[:\-–|]\s*)?(.*)$",
        re.IGNORECASE,
    )


def _classify_value(value: str) -> Verdict:
    value = value.strip().strip("*_`").strip()
    if not value:
        return Verdict.MISSING
    if _HEDGE_WORDS.search(value):
        return Verdict.AMBIGUOUS
    has_fail = bool(_FAIL_WORDS.search(value))
    has_pass = bool(_PASS_WORDS.search(_FAIL_WORDS.sub(" ", value)))
    if has_fail and has_pass:
        return Verdict.AMBIGUOUS
    if has_fail:
        return Verdict.FAIL
    if has_pass:
        return Verdict.PASS
    return Verdict.AMBIGUOUS


def _verdict_values(text: str, labels: Sequence[str]) -> list[tuple[str, bool]]:
    """Return ``(value, from_heading)`` for every line carrying one of ``labels``."""
    values: list[tuple[str, bool]] = []
    lines = text.splitlines()
    patterns = [_label_pattern(label) for label in labels]
    for index, line in enumerate(lines):
        for pattern in patterns:
            match = pattern.match(line)
            if not match:
                continue
            value = match.group(1).strip()
            if not value.strip("*_` ") and HEADING.match(line):
                following = next((item for item in lines[index + 1 :] if item.strip()), "")
                values.append((following, True))
            else:
                values.append((value, False))
            break
    return values


def read_verdict(text: str, labels: Sequence[str]) -> Verdict:
    """Read the verdict carried by any of ``labels``.

    Every labelled line must agree; conflicting lines are ambiguous. A heading
    whose first paragraph carries no verdict words does not count against an
    explicit verdict line elsewhere.
    """
    values = _verdict_values(text, labels)
    if not values:
        return Verdict.MISSING
    explicit: set[Verdict] = set()
    from_headings: set[Verdict] = set()
    for value, from_heading in values:
        verdict = _classify_value(value)
        if verdict is Verdict.MISSING:
            continue
        (from_headings if from_heading else explicit).add(verdict)
    if explicit:
        from_headings.discard(Verdict.AMBIGUOUS)
    verdicts = explicit | from_headings
    if not verdicts:
        return Verdict.MISSING
    if len(verdicts) > 1:
        return Verdict.AMBIGUOUS
    return verdicts.pop()
