from taskpilot.tools.base import (
    FunctionTool,
    ToolError,
    ToolErrorResult,
    ToolRegistry,
    ToolSet,
    parse_tool_error,
)

__all__ = [
    "FunctionTool",
    "ToolError",
    "ToolErrorResult",
    "ToolRegistry",
    "ToolSet",
    "parse_tool_error",
]
