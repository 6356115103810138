"""Deterministic success/failure classification of an execution step."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from taskpilot.chat.base import Message
from taskpilot.config import DEFAULT_SEVERE_ERROR_KEYWORDS, PolicyConfig
from taskpilot.tools.base import parse_tool_error


@dataclass(slots=True)
class TaskOutcome:
    success: bool
    reason: str
    matched: str | None = None


class OutcomeEvaluator(Protocol):
    def evaluate(
        self,
        last_message: Message | None,
        tool_messages: Sequence[Message] = (),
    ) -> TaskOutcome: ...


class OutcomePolicy:
    """Lenient policy: anything that is not a recognised severe error succeeds."""

    def __init__(
        self,
        severe_error_keywords: Sequence[str] = DEFAULT_SEVERE_ERROR_KEYWORDS,
        tool_error_marker: str = "error",
    ) -> None:
        self.severe_error_keywords = tuple(
            keyword.lower() for keyword in severe_error_keywords if keyword.strip()
        )
        self.tool_error_marker = tool_error_marker.lower()

    @classmethod
    def from_config(cls, config: PolicyConfig) -> OutcomePolicy:
        return cls(config.severe_error_keywords, config.tool_error_marker)

    def evaluate(
        self,
        last_message: Message | None,
        tool_messages: Sequence[Message] = (),
    ) -> TaskOutcome:
        content = last_message.content if last_message is not None else ""
        keyword = _first_match(content.lower(), self.severe_error_keywords)
        if keyword is not None:
            return TaskOutcome(False, "severe_error_keyword", keyword)

        candidates = list(tool_messages)
        if last_message is not None and last_message.role == "tool":
            candidates.append(last_message)
        for message in candidates:
            if message.role != "tool":
                continue
            failure = parse_tool_error(message.content)
            if failure is None:
                continue
            if self.tool_error_marker in failure.error_message.lower():
                return TaskOutcome(False, "tool_error", failure.tool_name or None)

        return TaskOutcome(True, "no_severe_error")


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
