from taskpilot.chat.base import (
    ChatModel,
    ChatModelError,
    ChatModelTimeoutError,
    Message,
    ToolCall,
    ToolInfo,
    clean_messages,
)
from taskpilot.chat.openai_chat import OpenAIChatModel
from taskpilot.chat.resilient import ResilientChatModel, RetryPolicy

__all__ = [
    "ChatModel",
    "ChatModelError",
    "ChatModelTimeoutError",
    "Message",
    "OpenAIChatModel",
    "ResilientChatModel",
    "RetryPolicy",
    "ToolCall",
    "ToolInfo",
    "clean_messages",
]
