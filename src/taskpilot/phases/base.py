from __future__ import annotations

import logging
from collections.abc import Sequence

from taskpilot.chat.base import ChatModel, Message, clean_messages

logger = logging.getLogger(__name__)

RESULT_PAYLOAD_TYPE = "result"


class Phase:
    """One model-backed step of a workflow run.

    Subclasses set ``role`` and ``fallback_prompt``; a non-empty ``prompt``
    passed at construction replaces the fallback.
    """

    role: str = "phase"
    fallback_prompt: str = "You are a helpful assistant."

    def __init__(self, model: ChatModel, *, prompt: str = "") -> None:
        self.model = model
        self.system_prompt = (prompt or self.fallback_prompt).strip()

    def compose(self, history: Sequence[Message], system_prompt: str | None = None) -> list[Message]:
        cleaned = clean_messages(history)
        if len(cleaned) != len(history):
            logger.info(
                "%s: dropped %d invalid messages before the model call",
                self.role,
                len(history) - len(cleaned),
            )
        return [Message.system(system_prompt or self.system_prompt), *cleaned]


def result_payload(role: str = "assistant") -> dict[str, str]:
    return {"role": role, "type": RESULT_PAYLOAD_TYPE}
