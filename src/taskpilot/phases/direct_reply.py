from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from taskpilot.phases.base import result_payload
from taskpilot.plan.tasks import strip_mode_markers
from taskpilot.progress import EventKind, ProgressBus

if TYPE_CHECKING:
    from taskpilot.runner import WorkflowRun

logger = logging.getLogger(__name__)


class DirectReply:
    """Forward the planner's answer as the final result. Never touches the plan store."""

    role = "direct_reply"

    def run(self, run: WorkflowRun, bus: ProgressBus, content: str) -> str:
        answer = strip_mode_markers(content)
        logger.info(
            "direct reply for session %s: %d -> %d chars",
            run.session_id,
            len(content),
            len(answer),
        )
        bus.emit(EventKind.RESULT_CHUNK, self.role, answer, payload=result_payload())
        run.final_answer = answer
        return answer
