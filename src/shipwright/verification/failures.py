"""Failure signatures parsed from check output.

A signature is ``(check, file, title)`` with volatile detail (ANSI colour,
durations, line/column numbers) stripped from the title, so two runs that fail
the same way produce the same set.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from shipwright.verification.runner import WorkspaceTestResult

ANSI = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
DURATION = re.compile(r"\s*\(\d+(?:\.\d+)?\s*m?s\)")
TS_PAREN = re.compile(r"^(?P<file>[^\s(][^(]*?)\(\d+,\d+\):\s+error\s+(?P<code>TS\d+):\s*(?P<msg>.+)$")
TS_COLON = re.compile(r"^(?P<file>\S+?):\d+:\d+\s+-\s+error\s+(?P<code>TS\d+):\s*(?P<msg>.+)$")
ESLINT_FILE = re.compile(r"^(?P<file>(?:/|\.{0,2}/|[A-Za-z]:\\)?\S+\.[cm]?[jt]sx?)$")
ESLINT_ROW = re.compile(r"^\s+\d+:\d+\s+error\s+(?P<msg>.+?)\s{2,}(?P<rule>[@\w/-]+)$")
JEST_FAIL = re.compile(r"^\s*FAIL\s+(?P<file>\S+)")
JEST_TITLE = re.compile(r"^\s*●\s+(?P<title>.+)$")
PLAYWRIGHT = re.compile(
    r"^\s*\d+\)\s+(?:\[(?P<project>[^\]]+)\]\s+›\s+)?(?P<file>[^\s:]+):\d+:\d+\s+›\s+(?P<title>.+)$"
)
PYTEST_FAILED = re.compile(r"^(?:FAILED|ERROR)\s+(?P<file>[^\s:]+)(?:::(?P<test>\S+))?(?:\s+-\s+.*)?$")


@dataclass(slots=True, frozen=True, order=True)
class FailureSignature:
    check: str
    file: str
    title: str

    def __str__(self) -> str:
        location = f" ({self.file})" if self.file else ""
        return f"[{self.check}] {self.title}{location}"


@dataclass(slots=True, frozen=True)
class FailureDelta:
    resolved: frozenset[FailureSignature]
    introduced: frozenset[FailureSignature]
    remaining: frozenset[FailureSignature]

    def summary(self) -> str:
        lines: list[str] = []
        for label, items in (
            ("Resolved", self.resolved),
            ("Newly introduced", self.introduced),
            ("Still failing", self.remaining),
        ):
            if items:
                lines.append(f"{label} ({len(items)}):")
                lines.extend(f"- {item}" for item in sorted(items))
        return "\n".join(lines)


def normalize_title(text: str) -> str:
    text = ANSI.sub("", text)
    text = DURATION.sub("", text)
    text = re.sub(r":\d+:\d+\b", "", text)
    return re.sub(r"\s+", " ", text).strip()


def _normalize_path(path: str) -> str:
    return path.strip().removeprefix("./")


def parse_output(check: str, output: str) -> set[FailureSignature]:
    signatures: set[FailureSignature] = set()
    eslint_file = ""
    jest_file = ""
    for raw_line in ANSI.sub("", output).splitlines():
        line = raw_line.rstrip()
        if not line:
            continue

        match = TS_PAREN.match(line) or TS_COLON.match(line)
        if match:
            signatures.add(
                FailureSignature(
                    check,
                    _normalize_path(match.group("file")),
                    normalize_title(f"{match.group('code')}: {match.group('msg')}"),
                )
            )
            continue

        match = PLAYWRIGHT.match(line)
        if match:
            signatures.add(
                FailureSignature(
                    check, _normalize_path(match.group("file")), normalize_title(match.group("title"))
                )
            )
            continue

        match = PYTEST_FAILED.match(line)
        if match:
            title = match.group("test") or "collection error"
            signatures.add(
                FailureSignature(check, _normalize_path(match.group("file")), normalize_title(title))
            )
            continue

        match = JEST_FAIL.match(line)
        if match:
            jest_file = _normalize_path(match.group("file"))
            continue
        match = JEST_TITLE.match(line)
        if match and jest_file:
            title = match.group("title")
            if not title.lower().startswith("console."):
                signatures.add(FailureSignature(check, jest_file, normalize_title(title)))
            continue

        match = ESLINT_FILE.match(line)
        if match:
            eslint_file = _normalize_path(match.group("file"))
            continue
        match = ESLINT_ROW.match(line)
        if match and eslint_file:
            signatures.add(
                FailureSignature(
                    check,
                    eslint_file,
                    normalize_title(f"{match.group('rule')}: {match.group('msg')}"),
                )
            )
    return signatures


def classify_failures(result: WorkspaceTestResult) -> frozenset[FailureSignature]:
    """Deduplicated signatures for every failed check.

    A failed check whose output matches no known format still contributes one
    signature, so it is never invisible to the delta.
    """
    signatures: set[FailureSignature] = set()
    for check in result.failed_checks:
        parsed = parse_output(check.name, check.output)
        if not parsed:
            reason = "timed out" if check.timed_out else "failed"
            parsed = {FailureSignature(check.name, "", f"{check.name} {reason}")}
        signatures |= parsed
    return frozenset(signatures)


def failure_delta(
    before: frozenset[FailureSignature], after: frozenset[FailureSignature]
) -> FailureDelta:
    return FailureDelta(
        resolved=before - after,
        introduced=after - before,
        remaining=before & after,
    )
