from __future__ import annotations

import logging
from dataclasses import dataclass, field

from taskpilot.plan.merge import MergeDecision, merge_tasks
from taskpilot.plan.tasks import (
    Task,
    TaskStatus,
    first_pending,
    parse_plan_text,
    parse_tasks,
    render_tasks,
)
from taskpilot.state.plan_store import PlanNotFoundError, PlanStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Plan:
    session_id: str
    tasks: list[Task] = field(default_factory=list)
    version: int = 0
    decisions: list[MergeDecision] = field(default_factory=list)

    @property
    def text(self) -> str:
        return render_tasks(self.tasks)

    @property
    def is_empty(self) -> bool:
        return not self.tasks

    @property
    def current(self) -> Task | None:
        return first_pending(self.tasks)

    def merge_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for decision in self.decisions:
            counts[decision.action] = counts.get(decision.action, 0) + 1
        return counts

    def get(self, key: str) -> Task | None:
        for task in self.tasks:
            if task.key == key:
                return task
        return None


class PlanManager:
    """Reads, merges and appends plan versions for sessions of one store."""

    def __init__(self, store: PlanStore) -> None:
        self.store = store

    def latest(self, session_id: str) -> Plan:
        try:
            text, version = self.store.get_latest(session_id)
        except PlanNotFoundError:
            return Plan(session_id=session_id)
        return Plan(session_id=session_id, tasks=parse_tasks(text), version=version)

    def write(self, session_id: str, text: str) -> Plan:
        """Clean ``text``, merge it onto the latest version and append the result.

        Raises ``InvalidPlanFormatError`` when ``text`` holds no task line and
        ``PlanWriteError`` when the store rejects the append.
        """

        proposed = parse_plan_text(text)
        with self.store.session_lock(session_id):
            existing = self.latest(session_id)
            result = merge_tasks(existing.tasks, proposed)
            version = self.store.append_version(session_id, render_tasks(result.tasks))
        if not result.changed:
            logger.info("merge left the plan of session %s unchanged (v%d)", session_id, version)
        return Plan(
            session_id=session_id,
            tasks=result.tasks,
            version=version,
            decisions=result.decisions,
        )

    def force_status(self, session_id: str, key: str, status: TaskStatus) -> Plan | None:
        """Move pending task ``key`` to ``status`` without going through a merge.

        Returns ``None`` when the task is unknown or already finished.
        """

        with self.store.session_lock(session_id):
            plan = self.latest(session_id)
            target = plan.get(key)
            if target is None:
                logger.warning(
                    "force %s: task %s not found in session %s",
                    status.value,
                    key,
                    session_id,
                )
                return None
            if target.status is not TaskStatus.PENDING:
                logger.info(
                    "force %s: task %s already %s, nothing to do",
                    status.value,
                    key,
                    target.status.value,
                )
                return None
            tasks = [task.with_status(status) if task.key == key else task for task in plan.tasks]
            version = self.store.append_version(session_id, render_tasks(tasks))
        logger.info("forced task %s to %s (v%d)", key, status.value, version)
        return Plan(session_id=session_id, tasks=tasks, version=version)

    def complete_current(self, session_id: str) -> Plan | None:
        with self.store.session_lock(session_id):
            current = self.latest(session_id).current
            if current is None:
                logger.info("no pending task to complete for session %s", session_id)
                return None
            return self.force_status(session_id, current.key, TaskStatus.COMPLETED)
