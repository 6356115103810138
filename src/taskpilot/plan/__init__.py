from taskpilot.plan.manager import Plan, PlanManager
from taskpilot.plan.merge import MergeDecision, MergeResult, merge_tasks
from taskpilot.plan.policy import OutcomeEvaluator, OutcomePolicy, TaskOutcome
from taskpilot.plan.tasks import (
    InvalidPlanFormatError,
    Task,
    TaskStatus,
    clean_plan_text,
    contains_plan,
    extract_task_key,
    first_pending,
    is_valid_plan,
    parse_plan_text,
    parse_tasks,
    render_tasks,
    strip_mode_markers,
    strip_thinking,
)

__all__ = [
    "InvalidPlanFormatError",
    "MergeDecision",
    "MergeResult",
    "OutcomeEvaluator",
    "OutcomePolicy",
    "Plan",
    "PlanManager",
    "Task",
    "TaskOutcome",
    "TaskStatus",
    "clean_plan_text",
    "contains_plan",
    "extract_task_key",
    "first_pending",
    "is_valid_plan",
    "merge_tasks",
    "parse_plan_text",
    "parse_tasks",
    "render_tasks",
    "strip_mode_markers",
    "strip_thinking",
]
