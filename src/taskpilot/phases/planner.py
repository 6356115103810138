from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from taskpilot.chat.base import ChatModel, Message
from taskpilot.phases.base import Phase
from taskpilot.plan.manager import PlanManager
from taskpilot.plan.tasks import InvalidPlanFormatError, clean_plan_text, contains_plan
from taskpilot.progress import EventKind, ProgressBus
from taskpilot.state.plan_store import PlanWriteError

if TYPE_CHECKING:
    from taskpilot.runner import WorkflowRun

logger = logging.getLogger(__name__)


class Planner(Phase):
    role = "planner"
    fallback_prompt = """
You are the planning assistant.
If the request needs several steps, answer with [MODE:TODO_LIST] followed by a
numbered checklist, one task per line, in the form "- [ ] 1. description".
If the request can be answered right away, answer with [MODE:DIRECT_REPLY]
followed by the answer itself.
""".strip()

    def __init__(self, model: ChatModel, plans: PlanManager, *, prompt: str = "") -> None:
        super().__init__(model, prompt=prompt)
        self.plans = plans

    def enriched_prompt(self, session_id: str) -> str:
        plan = self.plans.latest(session_id)
        if plan.is_empty:
            return self.system_prompt
        return f"{self.system_prompt}\n\nCurrent task status of this session:\n{plan.text}"

    async def run(self, run: WorkflowRun) -> Message:
        messages = self.compose(run.history, self.enriched_prompt(run.session_id))
        reply = await self.model.generate(messages)
        logger.info(
            "planner replied for session %s (%d chars)",
            run.session_id,
            len(reply.content),
        )
        run.last_message = reply
        return reply

    @staticmethod
    def wants_plan(content: str) -> bool:
        return contains_plan(content)

    def write_plan(self, run: WorkflowRun, bus: ProgressBus, content: str) -> None:
        """Persist the planner's checklist as a new version and announce it."""

        try:
            plan = self.plans.write(run.session_id, content)
        except InvalidPlanFormatError:
            logger.warning("no valid task line in planner output for session %s", run.session_id)
            return
        except PlanWriteError as exc:
            run.record_write_failure(exc)
            cleaned = clean_plan_text(content)
            bus.emit(
                EventKind.COMPLETE,
                "plan",
                cleaned,
                payload={"content_length": len(cleaned), "persisted": False},
            )
            return

        run.record_write_success()
        bus.emit(
            EventKind.COMPLETE,
            "plan",
            plan.text,
            payload={
                "content_length": len(plan.text),
                "version": plan.version,
                "persisted": True,
                "merge": plan.merge_counts(),
            },
        )
