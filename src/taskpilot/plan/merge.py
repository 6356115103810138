"""Merge a proposed task list into the stored plan without losing finished work."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Literal

from taskpilot.plan.tasks import Task, TaskStatus, first_pending

logger = logging.getLogger(__name__)

MergeAction = Literal["added", "updated", "unchanged", "rejected"]


@dataclass(slots=True)
class MergeDecision:
    key: str
    action: MergeAction
    reason: str


@dataclass(slots=True)
class MergeResult:
    tasks: list[Task]
    decisions: list[MergeDecision] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return any(item.action in {"added", "updated"} for item in self.decisions)

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self.tasks:
            counts[task.status.value] += 1
        return counts


def _decide(existing: Task, proposed: Task, *, is_current: bool) -> tuple[MergeAction, str]:
    before = existing.status
    after = proposed.status

    if not before.finished and after.finished:
        if not is_current:
            return "rejected", "only the current pending task may finish"
        return "updated", f"pending -> {after.value}"

    if before.finished and not after.finished:
        return "rejected", f"cannot roll back {before.value} task to pending"

    if before.finished and after.finished and before is not after:
        return "rejected", f"cannot change {before.value} task to {after.value}"

    if existing.description != proposed.description:
        return "updated", f"content update, status stays {before.value}"
    return "unchanged", "same status and content"


def merge_tasks(existing: list[Task], proposed: list[Task]) -> MergeResult:
    """Apply ``proposed`` onto ``existing`` task by task.

    New keys are appended after the current maximum order. A pending task can
    only finish if it is the first pending task of ``existing``; finished tasks
    never return to pending and never flip between completed and failed.
    """

    merged: dict[str, Task] = {task.key: replace(task) for task in existing}
    current = first_pending(existing)
    current_key = current.key if current is not None else None
    next_order = max((task.order for task in existing), default=-1) + 1
    decisions: list[MergeDecision] = []

    for candidate in proposed:
        known = merged.get(candidate.key)
        if known is None:
            merged[candidate.key] = replace(candidate, order=next_order)
            next_order += 1
            decisions.append(MergeDecision(candidate.key, "added", "new task"))
            logger.info("plan merge: added task %s", candidate.key)
            continue

        action, reason = _decide(known, candidate, is_current=candidate.key == current_key)
        decisions.append(MergeDecision(candidate.key, action, reason))
        if action == "updated":
            logger.info(
                "plan merge: updated task %s (%s): %r -> %r",
                candidate.key,
                reason,
                known.line,
                candidate.line,
            )
            known.description = candidate.description
            known.status = candidate.status
        elif action == "rejected":
            logger.warning(
                "plan merge: rejected update of task %s (%s): kept %r, ignored %r",
                candidate.key,
                reason,
                known.line,
                candidate.line,
            )

    tasks = sorted(merged.values(), key=lambda item: item.order)
    result = MergeResult(tasks=tasks, decisions=decisions)
    logger.info("plan merge result: %d tasks %s", len(tasks), result.counts())
    return result
