from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from taskpilot.chat.base import ChatModel, Message
from taskpilot.phases.base import Phase
from taskpilot.progress import EventKind, ProgressBus
from taskpilot.tools.base import ToolErrorResult, ToolSet

if TYPE_CHECKING:
    from taskpilot.runner import WorkflowRun

logger = logging.getLogger(__name__)

EMPTY_TOOL_RESULT = "(empty result)"


def _with_placeholder(message: Message) -> Message:
    if message.content.strip():
        return message
    return replace(message, content=EMPTY_TOOL_RESULT)


class Executor(Phase):
    """Works on the current task, calling tools until the model stops asking."""

    role = "executor"
    fallback_prompt = """
You are the execution assistant.
Carry out the task in the last user message. Use the available tools when
they help, and finish with a short report of what was done.
""".strip()

    def __init__(
        self,
        model: ChatModel,
        tool_set: ToolSet | None = None,
        *,
        prompt: str = "",
    ) -> None:
        self.tool_set = tool_set
        if tool_set is not None:
            infos = tool_set.infos()
            if infos:
                model = model.bind_tools(infos)
        super().__init__(model, prompt=prompt)

    async def run(self, run: WorkflowRun) -> Message:
        reply = await self.model.generate(self.compose(run.history))
        run.last_message = reply
        if reply.tool_calls:
            logger.info(
                "executor requested %d tool calls for session %s: %s",
                len(reply.tool_calls),
                run.session_id,
                ", ".join(call.name for call in reply.tool_calls),
            )
        return reply

    async def invoke_tools(self, run: WorkflowRun, bus: ProgressBus) -> list[Message]:
        request = run.last_message
        if request is None or not request.tool_calls:
            return []
        run.history.append(request)
        if self.tool_set is None:
            results = [
                Message.tool(
                    ToolErrorResult("No tool set is configured.", call.name).to_json(),
                    tool_call_id=call.id,
                    name=call.name,
                )
                for call in request.tool_calls
            ]
        else:
            replies = await self.tool_set.invoke(request)
            results = [_with_placeholder(message) for message in replies]
        for message in results:
            bus.emit(
                EventKind.COMPLETE,
                "tool_result",
                f"> {message.content}",
                payload={"tool": message.name or "", "content_length": len(message.content)},
            )
        run.history.extend(results)
        run.step_tool_messages.extend(results)
        if results:
            run.last_message = results[-1]
        return results
