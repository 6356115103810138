from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from taskpilot.chat.base import Message
from taskpilot.phases.base import Phase, result_payload
from taskpilot.progress import EventKind, ProgressBus

if TYPE_CHECKING:
    from taskpilot.runner import WorkflowRun

logger = logging.getLogger(__name__)

ALL_TASKS_COMPLETED = "All tasks completed."


class Summarizer(Phase):
    role = "summarizer"
    fallback_prompt = """
You write the final answer for the user.
Summarize what was done for each task, call out tasks that failed, and answer
the original request as directly as the results allow.
""".strip()

    async def run(self, run: WorkflowRun, bus: ProgressBus) -> str:
        closing = run.last_message
        if closing is None or not closing.content.strip():
            closing = Message.assistant(ALL_TASKS_COMPLETED)
        if not run.history or run.history[-1] is not closing:
            run.history.append(closing)

        chunks: list[str] = []
        async for chunk in self.model.stream(self.compose(run.history)):
            if not chunk.content:
                continue
            chunks.append(chunk.content)
            bus.emit(
                EventKind.RESULT_CHUNK,
                "summary",
                chunk.content,
                payload=result_payload(chunk.role),
            )
        answer = "".join(chunks)
        logger.info("summary for session %s streamed %d chunks", run.session_id, len(chunks))
        run.final_answer = answer
        return answer
