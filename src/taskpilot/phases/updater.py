from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from taskpilot.chat.base import ChatModel, Message
from taskpilot.phases.base import Phase
from taskpilot.plan.manager import PlanManager
from taskpilot.plan.policy import OutcomeEvaluator, OutcomePolicy, TaskOutcome
from taskpilot.plan.tasks import InvalidPlanFormatError
from taskpilot.progress import EventKind, ProgressBus
from taskpilot.state.plan_store import PlanWriteError

if TYPE_CHECKING:
    from taskpilot.runner import WorkflowRun

logger = logging.getLogger(__name__)

RESPONSE_PREVIEW_LIMIT = 200


class Updater(Phase):
    """Judges the finished execution step and asks the model for the new task list."""

    role = "updater"
    fallback_prompt = """
You maintain the task list of this session.
Mark the task in progress as done with "- [x]" when it succeeded or as failed
with "- [!]" when it cannot be completed, leave the other tasks untouched, and
output the complete updated checklist and nothing else.
""".strip()

    def __init__(
        self,
        model: ChatModel,
        plans: PlanManager,
        *,
        policy: OutcomeEvaluator | None = None,
        prompt: str = "",
    ) -> None:
        super().__init__(model, prompt=prompt)
        self.plans = plans
        self.policy = policy or OutcomePolicy()

    def record_outcome(self, run: WorkflowRun, key: str, label: str) -> TaskOutcome:
        outcome = self.policy.evaluate(run.last_message, run.step_tool_messages)
        if not outcome.success:
            run.failure_counts[key] = run.failure_counts.get(key, 0) + 1
            logger.warning(
                "task %s failed (attempt %d/%d): %s %s",
                key,
                run.failure_counts[key],
                run.max_retries,
                outcome.reason,
                outcome.matched or "",
            )
        elif run.failure_counts.get(key, 0) > 0:
            logger.info(
                "task %s succeeded, resetting failure count (was %d)",
                key,
                run.failure_counts[key],
            )
            run.failure_counts[key] = 0

        preview = run.last_message.content if run.last_message is not None else ""
        if len(preview) > RESPONSE_PREVIEW_LIMIT:
            preview = preview[:RESPONSE_PREVIEW_LIMIT] + "..."
        logger.info(
            "task %r outcome=%s reason=%s response=%r",
            label,
            "success" if outcome.success else "failure",
            outcome.reason,
            preview,
        )
        return outcome

    async def run(self, run: WorkflowRun) -> Message:
        plan = self.plans.latest(run.session_id)
        step_result = run.last_message
        system_prompt = self.system_prompt

        if plan.is_empty:
            logger.warning("no stored plan to update for session %s", run.session_id)
        else:
            current = plan.current
            if current is None:
                key, label = "", "current task"
            else:
                key, label = current.key, current.description
            if key:
                outcome = self.record_outcome(run, key, label)
                verdict = "success" if outcome.success else "failure"
                system_prompt = (
                    f"{self.system_prompt}\n\n"
                    f"Task in progress: {label}\n"
                    f"Execution outcome: {verdict} ({outcome.reason})\n\n"
                    "Update the status of this task and output the complete updated task list."
                )
            run.history.append(Message.assistant(f"Current task list:\n{plan.text}"))

        if step_result is not None and step_result.role == "assistant":
            run.history.append(step_result)

        reply = await self.model.generate(self.compose(run.history, system_prompt))
        run.last_message = reply
        return reply

    def _auto_complete(self, run: WorkflowRun, bus: ProgressBus, reason: str) -> None:
        logger.warning(
            "updater output %s for session %s, completing current task",
            reason,
            run.session_id,
        )
        before = self.plans.latest(run.session_id).current
        try:
            plan = self.plans.complete_current(run.session_id)
        except PlanWriteError as exc:
            run.record_write_failure(exc)
            return
        run.record_write_success()
        if plan is None or before is None:
            return
        bus.emit(
            EventKind.COMPLETE,
            "auto_complete",
            f"Task completed: {before.description}",
            payload={"auto_completed": True, "key": before.key, "version": plan.version},
        )

    def write_updated_plan(self, run: WorkflowRun, bus: ProgressBus, content: str) -> None:
        if not content.strip():
            self._auto_complete(run, bus, "was empty")
            return
        try:
            plan = self.plans.write(run.session_id, content)
        except InvalidPlanFormatError:
            self._auto_complete(run, bus, "held no valid task line")
            return
        except PlanWriteError as exc:
            run.record_write_failure(exc)
            return
        run.record_write_success()
        bus.emit(
            EventKind.COMPLETE,
            "update_plan",
            plan.text,
            payload={
                "content_length": len(plan.text),
                "version": plan.version,
                "merge": plan.merge_counts(),
            },
        )
