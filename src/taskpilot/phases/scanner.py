from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from taskpilot.chat.base import Message
from taskpilot.plan.manager import PlanManager
from taskpilot.plan.tasks import Task, TaskStatus
from taskpilot.progress import EventKind, ProgressBus

if TYPE_CHECKING:
    from taskpilot.runner import WorkflowRun

logger = logging.getLogger(__name__)


class Scanner:
    """Pick the next pending task, retiring tasks that exhausted their retries."""

    role = "scanner"

    def __init__(self, plans: PlanManager) -> None:
        self.plans = plans

    def next_task(self, run: WorkflowRun, bus: ProgressBus) -> Task | None:
        """Return the first pending task that still has retries left.

        A ``PlanWriteError`` from marking an exhausted task failed propagates.
        """

        while True:
            plan = self.plans.latest(run.session_id)
            task = plan.current
            if task is None:
                logger.info(
                    "no pending task left for session %s (v%d)",
                    run.session_id,
                    plan.version,
                )
                return None

            failures = run.failure_counts.get(task.key, 0)
            if failures < run.max_retries:
                logger.info(
                    "task %s failure count %d/%d for session %s",
                    task.key,
                    failures,
                    run.max_retries,
                    run.session_id,
                )
                return task

            logger.warning(
                "task %s failed %d times, marking it failed for session %s",
                task.key,
                failures,
                run.session_id,
            )
            forced = self.plans.force_status(run.session_id, task.key, TaskStatus.FAILED)
            if forced is None:
                return task
            bus.emit(
                EventKind.COMPLETE,
                "retry_limit",
                f"Task reached the retry limit and was marked failed: {task.description}",
                payload={"key": task.key, "failures": failures, "version": forced.version},
            )

    def run(self, run: WorkflowRun, bus: ProgressBus) -> Task | None:
        task = self.next_task(run, bus)
        run.current_task = task
        run.step_tool_messages = []
        if task is None:
            run.last_message = Message.assistant("")
            return None
        bus.emit(
            EventKind.COMPLETE,
            "execute_task",
            task.description,
            payload={"key": task.key, "failures": run.failure_counts.get(task.key, 0)},
        )
        message = Message.user(task.description)
        run.history.append(message)
        run.last_message = message
        return task
