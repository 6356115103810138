"""Checklist parsing: task lines, canonical keys, and plan text cleaning.

A task line is a bullet followed by a bracketed status marker::

    - [ ] 1. Diagnose the projector in room 305
    - [x] 2. Fill the repair ticket
    - [!] 3. Hand over to the helpdesk

Keys are a pure function of the line text so the same task keeps its identity
across plan versions regardless of its status marker.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, replace
from enum import Enum

TASK_LINE_PATTERN = re.compile(r"^\s*[-*]\s*\[\s*([xX!]?)\s*\]\s*(\S.*)$")
MARKER_PREFIX_PATTERN = re.compile(r"^\s*[-*]\s*\[\s*[xX!]?\s*\]\s*")
STRICT_NUMBER_PATTERN = re.compile(r"^[-*]\s*\[\s*[xX!]?\s*\]\s*(\d+)(?:[.:：)]|\s)")
TASK_WORD_PATTERN = re.compile(
    r"^[-*]\s*\[\s*[xX!]?\s*\]\s*(?:task|任务)\s*#?\s*(\d+)",
    re.IGNORECASE,
)
FIRST_NUMBER_PATTERN = re.compile(r"(\d+)")
MIXED_NUMBERING_PATTERN = re.compile(r"\d+：.*\d+：")
THINKING_BLOCK_PATTERN = re.compile(r"<think>.*?</think>", re.DOTALL)
THINKING_RESIDUE_PATTERN = re.compile(r"</think>-?\s*")
EXCESS_BLANK_LINES_PATTERN = re.compile(r"\n\s*\n\s*\n")

MODE_DIRECT_REPLY = "[MODE:DIRECT_REPLY]"
MODE_TODO_LIST = "[MODE:TODO_LIST]"

KEY_TEXT_LIMIT = 50
MAX_TASK_LINE_LENGTH = 200
_CHECKBOXES = ("[x]", "[ ]", "[!]")


class InvalidPlanFormatError(ValueError):
    """Raised when plan text holds no well-formed task line."""


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def marker(self) -> str:
        return {"pending": " ", "completed": "x", "failed": "!"}[self.value]

    @property
    def finished(self) -> bool:
        return self is not TaskStatus.PENDING

    @classmethod
    def from_marker(cls, marker: str) -> TaskStatus:
        normalized = marker.strip().lower()
        if normalized == "x":
            return cls.COMPLETED
        if normalized == "!":
            return cls.FAILED
        return cls.PENDING


@dataclass(slots=True)
class Task:
    key: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    order: int = 0

    @property
    def line(self) -> str:
        return f"- [{self.status.marker}] {self.description}"

    def with_status(self, status: TaskStatus) -> Task:
        return replace(self, status=status)


def is_task_line(line: str) -> bool:
    return TASK_LINE_PATTERN.match(line) is not None


def extract_task_key(line: str) -> str:
    text = line.strip()

    match = STRICT_NUMBER_PATTERN.match(text)
    if match:
        return match.group(1)

    match = TASK_WORD_PATTERN.match(text)
    if match:
        return match.group(1)

    match = FIRST_NUMBER_PATTERN.search(text)
    if match:
        return match.group(1)

    content = MARKER_PREFIX_PATTERN.sub("", text, count=1).strip()
    content = content.lstrip("-*").strip()
    content = content[:KEY_TEXT_LIMIT]
    if not content:
        digest = hashlib.md5(text.encode("utf-8")).hexdigest()
        content = f"hash_{digest}"[:16]
    return content


def parse_task_line(line: str, order: int = 0) -> Task | None:
    match = TASK_LINE_PATTERN.match(line)
    if match is None:
        return None
    return Task(
        key=extract_task_key(line),
        description=match.group(2).strip(),
        status=TaskStatus.from_marker(match.group(1)),
        order=order,
    )


def strip_thinking(content: str) -> str:
    content = THINKING_BLOCK_PATTERN.sub("", content)
    content = THINKING_RESIDUE_PATTERN.sub("", content)
    return EXCESS_BLANK_LINES_PATTERN.sub("\n\n", content)


def _is_corrupted(line: str) -> bool:
    if sum(line.count(box) for box in _CHECKBOXES) > 1:
        return True
    if len(line) > MAX_TASK_LINE_LENGTH:
        return True
    return MIXED_NUMBERING_PATTERN.search(line) is not None


def _dedupe(tasks: list[Task]) -> list[Task]:
    merged: dict[str, Task] = {}
    for task in tasks:
        existing = merged.get(task.key)
        if existing is None:
            merged[task.key] = replace(task, order=len(merged))
            continue
        if task.status.finished or not existing.status.finished:
            merged[task.key] = replace(task, order=existing.order)
    return sorted(merged.values(), key=lambda item: item.order)


def parse_tasks(content: str) -> list[Task]:
    """Parse every task line of ``content``, one task per key, in first-seen order."""

    tasks: list[Task] = []
    for index, raw_line in enumerate(content.splitlines()):
        task = parse_task_line(raw_line.strip(), order=index)
        if task is not None:
            tasks.append(task)
    return _dedupe(tasks)


def clean_plan_lines(content: str) -> list[Task]:
    if not content:
        return []
    tasks: list[Task] = []
    for raw_line in strip_thinking(content).splitlines():
        line = raw_line.strip()
        if not line or _is_corrupted(line):
            continue
        task = parse_task_line(line, order=len(tasks))
        if task is not None:
            tasks.append(task)
    return _dedupe(tasks)


def render_tasks(tasks: list[Task]) -> str:
    return "\n".join(task.line for task in sorted(tasks, key=lambda item: item.order))


def clean_plan_text(content: str) -> str:
    """Keep only well-formed, non-corrupted task lines of ``content``."""
    return render_tasks(clean_plan_lines(content))


def is_valid_plan(content: str) -> bool:
    return bool(clean_plan_lines(content))


def parse_plan_text(content: str) -> list[Task]:
    tasks = clean_plan_lines(content)
    if not tasks:
        raise InvalidPlanFormatError("No well-formed task line found in plan text.")
    return tasks


def contains_plan(content: str) -> bool:
    if not content:
        return False
    if MODE_DIRECT_REPLY in content:
        return False
    if MODE_TODO_LIST in content:
        return True
    return any(is_task_line(line) for line in strip_thinking(content).splitlines())


def strip_mode_markers(content: str) -> str:
    content = content.replace(MODE_DIRECT_REPLY, "").replace(MODE_TODO_LIST, "")
    return content.strip()


def first_pending(tasks: list[Task]) -> Task | None:
    for task in sorted(tasks, key=lambda item: item.order):
        if task.status is TaskStatus.PENDING:
            return task
    return None
