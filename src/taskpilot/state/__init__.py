from taskpilot.state.history import DiskHistoryStore, HistoryStore, MemoryHistoryStore
from taskpilot.state.plan_store import (
    DiskPlanStore,
    MemoryPlanStore,
    PlanNotFoundError,
    PlanStore,
    PlanStoreError,
    PlanWriteError,
)

__all__ = [
    "DiskHistoryStore",
    "DiskPlanStore",
    "HistoryStore",
    "MemoryHistoryStore",
    "MemoryPlanStore",
    "PlanNotFoundError",
    "PlanStore",
    "PlanStoreError",
    "PlanWriteError",
]
