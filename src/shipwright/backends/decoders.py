"""Decoders for the structured output streams of the supported agent CLIs.

Each decoder turns one line of agent stdout into zero or more typed records.
Records the decoder does not recognise are routed to ``Unparsed`` so callers can
report them instead of losing them silently. ``InvocationState.apply`` is the
only place that mutates the running state of an invocation.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

ARTIFACT_OPEN = "<artifact_output>"
ARTIFACT_CLOSE = "</artifact_output>"
ARTIFACT_END = "<!-- END_ARTIFACT -->"
HEADING_PATTERN = re.compile(r"^#{1,3}\s", re.MULTILINE)


@dataclass(slots=True, frozen=True)
class AssistantText:
    text: str
    cumulative: bool = False


@dataclass(slots=True, frozen=True)
class ToolUse:
    label: str


@dataclass(slots=True, frozen=True)
class TurnStarted:
    pass


@dataclass(slots=True, frozen=True)
class UsageDelta:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True, frozen=True)
class FinalResult:
    text: str | None = None
    num_turns: int | None = None
    cost_usd: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    subtype: str | None = None
    stop_reason: str | None = None


@dataclass(slots=True, frozen=True)
class Unparsed:
    raw: str
    reason: str


StreamRecord = AssistantText | ToolUse | TurnStarted | UsageDelta | FinalResult | Unparsed


@dataclass(slots=True)
class InvocationState:
    turn: int = 0
    last_tool: str = ""
    text_bytes: int = 0
    final_text: str = ""
    last_assistant_text: str = ""
    longest_assistant_text: str = ""
    accumulated_text: str = ""
    num_turns: int | None = None
    cost_usd: float | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    result_subtype: str = ""
    unparsed: list[str] = field(default_factory=list)

    def apply(self, record: StreamRecord) -> None:
        if isinstance(record, AssistantText):
            self._apply_text(record)
        elif isinstance(record, ToolUse):
            self.last_tool = record.label
        elif isinstance(record, TurnStarted):
            self.turn += 1
        elif isinstance(record, UsageDelta):
            self.input_tokens += record.input_tokens
            self.output_tokens += record.output_tokens
        elif isinstance(record, FinalResult):
            self._apply_result(record)
        elif isinstance(record, Unparsed):
            self.unparsed.append(f"{record.reason}: {record.raw[:200]}")

    def _apply_text(self, record: AssistantText) -> None:
        if record.cumulative:
            self.accumulated_text += record.text
            self.final_text = self.accumulated_text
            self.text_bytes = len(self.final_text.encode("utf-8"))
            return
        trimmed = record.text.strip()
        if not trimmed:
            return
        self.last_assistant_text = trimmed
        if len(trimmed) > len(self.longest_assistant_text):
            self.longest_assistant_text = trimmed
        if len(trimmed) > len(self.accumulated_text):
            self.accumulated_text = trimmed
        self.text_bytes = max(self.text_bytes, len(trimmed.encode("utf-8")))

    def _apply_result(self, record: FinalResult) -> None:
        if record.text is not None:
            self.final_text = record.text
            if record.text.strip():
                self.text_bytes = max(self.text_bytes, len(record.text.strip().encode("utf-8")))
        if record.num_turns is not None:
            self.num_turns = record.num_turns
        if record.cost_usd is not None:
            self.cost_usd = record.cost_usd
        if record.input_tokens is not None:
            self.input_tokens = record.input_tokens
        if record.output_tokens is not None:
            self.output_tokens = record.output_tokens
        if record.subtype:
            self.result_subtype = record.subtype
        if record.stop_reason:
            self.stop_reason = record.stop_reason

    @property
    def turns(self) -> int:
        return self.num_turns if self.num_turns is not None else self.turn


def brief_tool(name: str, tool_input: Any) -> str:
    if not isinstance(tool_input, dict):
        return name
    file_path = tool_input.get("file_path") or tool_input.get("path") or ""
    if isinstance(file_path, str) and file_path:
        return f"{name}({file_path.rsplit('/', 1)[-1]})"
    pattern = tool_input.get("pattern") or ""
    if isinstance(pattern, str) and pattern:
        return f"{name}({pattern[:30]})"
    command = tool_input.get("command") or ""
    if isinstance(command, str) and command:
        return f"{name}({command[:30]})"
    return name


def score_candidate(text: str) -> int:
    trimmed = text.strip()
    if not trimmed:
        return -1
    lowered = trimmed.lower()
    score = 0
    if ARTIFACT_OPEN in lowered:
        score += 4
    if ARTIFACT_CLOSE in lowered:
        score += 4
    if ARTIFACT_END.lower() in lowered:
        score += 8
    if HEADING_PATTERN.search(trimmed):
        score += 1
    # 8192 exactly is the size of a clipped result payload.
    if len(trimmed) > 8192:
        score += 2
    if len(trimmed) == 8192:
        score -= 1
    score += min(len(trimmed) // 4096, 5)
    return score


def select_output(candidates: list[tuple[str, str]]) -> tuple[str, str]:
    """Pick the best (source, text) candidate; ties go to the longer text."""
    seen: set[str] = set()
    best_source, best_text, best_score = candidates[0][0], candidates[0][1].strip(), -1
    for source, text in candidates:
        trimmed = text.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        score = score_candidate(trimmed)
        if score > best_score or (score == best_score and len(trimmed) > len(best_text)):
            best_source, best_text, best_score = source, trimmed, score
    return best_source, best_text


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _float_or_none(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _str_or_none(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


class StreamDecoder(ABC):
    name: str = "stream"
    passive_types: frozenset[str] = frozenset()

    def decode_line(self, line: str) -> list[StreamRecord]:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return [Unparsed(raw=line, reason="invalid_json")]
        if not isinstance(event, dict):
            return [Unparsed(raw=line, reason="not_an_object")]
        return self.decode_event(event, raw=line)

    @abstractmethod
    def decode_event(self, event: dict[str, Any], *, raw: str) -> list[StreamRecord]:
        """Decode one JSON object into typed records."""

    @abstractmethod
    def finalize(self, state: InvocationState, raw_stdout: str) -> tuple[str, str]:
        """Return the final ``(output, output_source)`` for a finished stream."""


class ClaudeStreamDecoder(StreamDecoder):
    """Decodes ``claude -p --output-format stream-json|json`` output."""

    passive_types = frozenset({"system", "user", "stream_event"})

    def __init__(self, output_format: str = "stream-json") -> None:
        self.output_format = output_format
        self.name = f"claude-{output_format}"

    def decode_event(self, event: dict[str, Any], *, raw: str) -> list[StreamRecord]:
        event_type = event.get("type")
        if event_type == "assistant":
            return self._decode_assistant(event, raw)
        if event_type == "result":
            return [self._decode_result(event)]
        if event_type is None and (
            "result" in event or "stop_reason" in event or "num_turns" in event
        ):
            return [self._decode_result(event)]
        if event_type in self.passive_types:
            return []
        return [Unparsed(raw=raw, reason=f"unknown_type:{event_type}")]

    @staticmethod
    def _decode_assistant(event: dict[str, Any], raw: str) -> list[StreamRecord]:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return [Unparsed(raw=raw, reason="assistant_without_content")]
        records: list[StreamRecord] = []
        text_parts: list[str] = []
        saw_tool = False
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                text_parts.append(block["text"])
            elif block.get("type") == "tool_use":
                saw_tool = True
                records.append(ToolUse(label=brief_tool(str(block.get("name", "tool")), block.get("input"))))
        if text_parts:
            records.insert(0, AssistantText(text="".join(text_parts)))
        if saw_tool:
            records.append(TurnStarted())
        return records

    @staticmethod
    def _decode_result(event: dict[str, Any]) -> FinalResult:
        usage = event.get("usage") if isinstance(event.get("usage"), dict) else {}
        input_tokens = _int_or_none(event.get("input_tokens"))
        output_tokens = _int_or_none(event.get("output_tokens"))
        if input_tokens is None:
            input_tokens = _int_or_none(usage.get("input_tokens"))
        if output_tokens is None:
            output_tokens = _int_or_none(usage.get("output_tokens"))
        text = event.get("result")
        return FinalResult(
            text=text if isinstance(text, str) else None,
            num_turns=_int_or_none(event.get("num_turns")),
            cost_usd=_float_or_none(event.get("total_cost_usd")),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            subtype=_str_or_none(event.get("subtype"), event.get("result_subtype")),
            stop_reason=_str_or_none(event.get("stop_reason"), event.get("stopReason")),
        )

    def finalize(self, state: InvocationState, raw_stdout: str) -> tuple[str, str]:
        if self.output_format == "json" and not state.final_text.strip():
            payload = _recover_json_payload(raw_stdout)
            if payload is not None:
                for record in self.decode_event(payload, raw=""):
                    state.apply(record)

        if self.output_format == "stream-json":
            source, output = select_output(
                [
                    ("result", state.final_text),
                    ("last_assistant", state.last_assistant_text),
                    ("longest_assistant", state.longest_assistant_text),
                    ("accumulated_assistant", state.accumulated_text),
                ]
            )
        else:
            output, source = state.final_text.strip(), "result"
            if not output:
                output = (
                    state.last_assistant_text
                    or state.longest_assistant_text
                    or state.accumulated_text
                )
                source = "assistant_fallback"
        if not output.strip() and self.output_format == "json" and raw_stdout.strip():
            return raw_stdout.strip(), "raw_stdout_fallback"
        return output.strip(), source


class CodexStreamDecoder(StreamDecoder):
    """Decodes ``codex exec --json`` events."""

    name = "codex-exec-json"
    passive_types = frozenset(
        {"thread.started", "item.started", "item.updated", "turn.failed", "error"}
    )
    passive_items = frozenset({"reasoning", "todo_list", "web_search", "error"})

    def decode_event(self, event: dict[str, Any], *, raw: str) -> list[StreamRecord]:
        event_type = event.get("type")
        if event_type == "turn.started":
            return [TurnStarted()]
        if event_type == "turn.completed":
            usage = event.get("usage")
            if not isinstance(usage, dict):
                return []
            return [
                UsageDelta(
                    input_tokens=_int_or_none(usage.get("input_tokens")) or 0,
                    output_tokens=_int_or_none(usage.get("output_tokens")) or 0,
                )
            ]
        if event_type == "item.completed" and isinstance(event.get("item"), dict):
            return self._decode_item(event["item"], raw)
        if event_type in self.passive_types:
            return []
        return [Unparsed(raw=raw, reason=f"unknown_type:{event_type}")]

    def _decode_item(self, item: dict[str, Any], raw: str) -> list[StreamRecord]:
        item_type = item.get("type")
        if item_type == "agent_message":
            text = item.get("text")
            return [AssistantText(text=text if isinstance(text, str) else "", cumulative=True)]
        if item_type == "command_execution":
            command = item.get("command")
            return [ToolUse(label=f"Bash({str(command or '')[:30]})")]
        if item_type == "mcp_tool_call":
            return [ToolUse(label=brief_tool(str(item.get("tool") or "tool"), item.get("arguments")))]
        if item_type == "file_change":
            file_name = str(item.get("file") or "").rsplit("/", 1)[-1] or "file"
            return [ToolUse(label=f"FileChange({file_name})")]
        if item_type in self.passive_items:
            return []
        return [Unparsed(raw=raw, reason=f"unknown_item:{item_type}")]

    def finalize(self, state: InvocationState, raw_stdout: str) -> tuple[str, str]:
        if state.final_text.strip():
            return state.final_text.strip(), "result"
        return state.accumulated_text.strip(), "accumulated_assistant"


def _recover_json_payload(raw: str) -> dict[str, Any] | None:
    trimmed = raw.strip()
    if not trimmed:
        return None
    candidates = [trimmed]
    candidates.extend(
        line.strip() for line in reversed(trimmed.splitlines()) if line.strip().startswith("{")
    )
    first, last = trimmed.find("{"), trimmed.rfind("}")
    if first != -1 and last > first:
        candidates.append(trimmed[first : last + 1])
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None
