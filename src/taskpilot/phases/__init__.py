from taskpilot.phases.base import Phase
from taskpilot.phases.direct_reply import DirectReply
from taskpilot.phases.executor import Executor
from taskpilot.phases.planner import Planner
from taskpilot.phases.scanner import Scanner
from taskpilot.phases.summarizer import Summarizer
from taskpilot.phases.updater import Updater

__all__ = [
    "DirectReply",
    "Executor",
    "Phase",
    "Planner",
    "Scanner",
    "Summarizer",
    "Updater",
]
