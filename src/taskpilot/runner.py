"""Workflow runner: an explicit state machine over the phase executors.

Each run is driven by a background ``asyncio.Task`` owned by the runner and
reports everything, including the final answer, through its ``ProgressBus``::

    runner = WorkflowRunner(model, tool_set=tools, plan_store=MemoryPlanStore())
    bus = runner.start_run("session-1", "Fix the projector in room 305")
    async for event in bus:
        print(event.kind.value, event.message)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from taskpilot.chat.base import ChatModel, ChatModelError, Message, clean_messages
from taskpilot.config import TaskpilotConfig
from taskpilot.phases.direct_reply import DirectReply
from taskpilot.phases.executor import Executor
from taskpilot.phases.planner import Planner
from taskpilot.phases.scanner import Scanner
from taskpilot.phases.summarizer import Summarizer
from taskpilot.phases.updater import Updater
from taskpilot.plan.manager import PlanManager
from taskpilot.plan.policy import OutcomeEvaluator, OutcomePolicy
from taskpilot.plan.tasks import Task
from taskpilot.progress import EventKind, ProgressBus, ProgressEvent
from taskpilot.state.history import HistoryStore
from taskpilot.state.plan_store import MemoryPlanStore, PlanStore, PlanStoreError, PlanWriteError
from taskpilot.tools.base import ToolSet

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    START = "start"
    PLANNING = "planning"
    WRITE_PLAN = "write_plan"
    DIRECT_REPLY = "direct_reply"
    SCANNING = "scanning"
    EXECUTING = "executing"
    TOOL_INVOCATION = "tool_invocation"
    UPDATING = "updating"
    WRITE_UPDATED_PLAN = "write_updated_plan"
    SUMMARIZING = "summarizing"
    END = "end"


class RunStepLimitError(RuntimeError):
    """Raised when a run exceeds its step ceiling."""


@dataclass(slots=True)
class WorkflowRun:
    session_id: str
    query: str
    history: list[Message] = field(default_factory=list)
    failure_counts: dict[str, int] = field(default_factory=dict)
    max_retries: int = 3
    finished: bool = False
    current_task: Task | None = None
    steps: int = 0
    state: RunState = RunState.START
    last_message: Message | None = None
    step_tool_messages: list[Message] = field(default_factory=list)
    final_answer: str = ""
    write_failures: int = 0

    def record_write_failure(self, exc: PlanWriteError) -> None:
        """Count a rejected plan write; raise once ``max_retries`` writes in a row failed."""

        self.write_failures += 1
        logger.error(
            "plan write for session %s failed (%d/%d in a row): %s",
            self.session_id,
            self.write_failures,
            self.max_retries,
            exc,
        )
        if self.write_failures >= self.max_retries:
            raise PlanWriteError(
                f"Plan store rejected {self.write_failures} consecutive writes: {exc}"
            ) from exc

    def record_write_success(self) -> None:
        self.write_failures = 0


Transition = Callable[[WorkflowRun, ProgressBus], Awaitable[RunState]]


class WorkflowRunner:
    def __init__(
        self,
        model: ChatModel | None = None,
        *,
        plan_model: ChatModel | None = None,
        execute_model: ChatModel | None = None,
        update_model: ChatModel | None = None,
        summary_model: ChatModel | None = None,
        tool_set: ToolSet | None = None,
        plan_store: PlanStore | None = None,
        history_store: HistoryStore | None = None,
        config: TaskpilotConfig | None = None,
        outcome_policy: OutcomeEvaluator | None = None,
    ) -> None:
        self.config = config or TaskpilotConfig.default()
        models = {
            "plan": plan_model or model,
            "execute": execute_model or model,
            "update": update_model or model,
            "summary": summary_model or model,
        }
        missing = sorted(name for name, item in models.items() if item is None)
        if missing:
            raise ValueError(f"No chat model configured for: {', '.join(missing)}")

        agent = self.config.agent
        self.plan_store = plan_store or MemoryPlanStore()
        self.history_store = history_store
        self.plans = PlanManager(self.plan_store)
        policy = outcome_policy or OutcomePolicy.from_config(self.config.policy)

        self.planner = Planner(models["plan"], self.plans, prompt=agent.plan_prompt)
        self.scanner = Scanner(self.plans)
        self.executor = Executor(models["execute"], tool_set, prompt=agent.execute_prompt)
        self.updater = Updater(
            models["update"],
            self.plans,
            policy=policy,
            prompt=agent.update_prompt,
        )
        self.summarizer = Summarizer(models["summary"], prompt=agent.summary_prompt)
        self.direct_reply = DirectReply()

        self._transitions: dict[RunState, Transition] = {
            RunState.START: self._start,
            RunState.PLANNING: self._planning,
            RunState.WRITE_PLAN: self._write_plan,
            RunState.DIRECT_REPLY: self._direct_reply,
            RunState.SCANNING: self._scanning,
            RunState.EXECUTING: self._executing,
            RunState.TOOL_INVOCATION: self._tool_invocation,
            RunState.UPDATING: self._updating,
            RunState.WRITE_UPDATED_PLAN: self._write_updated_plan,
            RunState.SUMMARIZING: self._summarizing,
        }
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._session_users: dict[str, int] = {}
        self._tasks: dict[asyncio.Task[None], str] = {}

    async def _start(self, run: WorkflowRun, bus: ProgressBus) -> RunState:
        history = clean_messages(run.history)
        run.history = [*history, Message.user(run.query)]
        logger.info(
            "run started for session %s with %d history messages",
            run.session_id,
            len(history),
        )
        bus.emit(EventKind.START, "run", run.query, payload={"history_messages": len(history)})
        return RunState.PLANNING

    async def _planning(self, run: WorkflowRun, bus: ProgressBus) -> RunState:
        reply = await self.planner.run(run)
        if self.planner.wants_plan(reply.content):
            return RunState.WRITE_PLAN
        logger.info("planner gave a direct reply for session %s", run.session_id)
        return RunState.DIRECT_REPLY

    async def _write_plan(self, run: WorkflowRun, bus: ProgressBus) -> RunState:
        content = run.last_message.content if run.last_message is not None else ""
        self.planner.write_plan(run, bus, content)
        return RunState.SCANNING

    async def _direct_reply(self, run: WorkflowRun, bus: ProgressBus) -> RunState:
        content = run.last_message.content if run.last_message is not None else ""
        self.direct_reply.run(run, bus, content)
        return RunState.END

    async def _scanning(self, run: WorkflowRun, bus: ProgressBus) -> RunState:
        task = self.scanner.run(run, bus)
        return RunState.EXECUTING if task is not None else RunState.SUMMARIZING

    async def _executing(self, run: WorkflowRun, bus: ProgressBus) -> RunState:
        reply = await self.executor.run(run)
        return RunState.TOOL_INVOCATION if reply.tool_calls else RunState.UPDATING

    async def _tool_invocation(self, run: WorkflowRun, bus: ProgressBus) -> RunState:
        await self.executor.invoke_tools(run, bus)
        return RunState.EXECUTING

    async def _updating(self, run: WorkflowRun, bus: ProgressBus) -> RunState:
        await self.updater.run(run)
        return RunState.WRITE_UPDATED_PLAN

    async def _write_updated_plan(self, run: WorkflowRun, bus: ProgressBus) -> RunState:
        content = run.last_message.content if run.last_message is not None else ""
        self.updater.write_updated_plan(run, bus, content)
        return RunState.SCANNING

    async def _summarizing(self, run: WorkflowRun, bus: ProgressBus) -> RunState:
        await self.summarizer.run(run, bus)
        return RunState.END

    async def drive(self, run: WorkflowRun, bus: ProgressBus) -> None:
        """Step ``run`` through its transitions until it reaches ``END``."""

        max_steps = self.config.agent.max_steps
        state = RunState.START
        while state is not RunState.END:
            run.steps += 1
            if run.steps > max_steps:
                raise RunStepLimitError(
                    f"Run for session {run.session_id} exceeded {max_steps} steps in {state.value}."
                )
            run.state = state
            logger.debug("session %s step %d: %s", run.session_id, run.steps, state.value)
            state = await self._transitions[state](run, bus)
        run.state = RunState.END
        run.finished = True

    def _claim_session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        self._session_users[session_id] = self._session_users.get(session_id, 0) + 1
        return lock

    def _release_session_lock(self, session_id: str) -> None:
        users = self._session_users.get(session_id, 0) - 1
        if users > 0:
            self._session_users[session_id] = users
            return
        self._session_users.pop(session_id, None)
        self._session_locks.pop(session_id, None)

    async def _execute(self, run: WorkflowRun, bus: ProgressBus) -> None:
        timeout = self.config.agent.run_timeout_seconds
        lock = self._claim_session_lock(run.session_id)
        try:
            async with asyncio.timeout(timeout):
                async with lock:
                    await self.drive(run, bus)
        except asyncio.CancelledError:
            logger.warning("run for session %s was cancelled", run.session_id)
            bus.emit(EventKind.ERROR, "run", "Run cancelled.", error="cancelled")
            raise
        except TimeoutError:
            logger.error("run for session %s timed out after %.0fs", run.session_id, timeout)
            bus.emit(
                EventKind.ERROR,
                "run",
                f"Run timed out after {timeout:.0f}s.",
                error="timeout",
            )
        except (ChatModelError, PlanStoreError, RunStepLimitError) as exc:
            logger.error(
                "run for session %s failed in %s: %s",
                run.session_id,
                run.state.value,
                exc,
            )
            bus.emit(
                EventKind.ERROR,
                run.state.value,
                "Run failed.",
                payload={"steps": run.steps},
                error=str(exc),
            )
        except Exception as exc:
            logger.exception("unexpected failure in run for session %s", run.session_id)
            bus.emit(
                EventKind.ERROR,
                run.state.value,
                "Run failed unexpectedly.",
                payload={"steps": run.steps},
                error=f"{type(exc).__name__}: {exc}",
            )
        else:
            logger.info("run for session %s finished in %d steps", run.session_id, run.steps)
            bus.emit(
                EventKind.DONE,
                "run",
                "Run completed.",
                payload={"steps": run.steps, "final_answer": run.final_answer},
            )
        finally:
            self._release_session_lock(run.session_id)
            bus.close()

    def new_run(
        self,
        session_id: str,
        query: str,
        history: Sequence[Message] | None = None,
    ) -> WorkflowRun:
        if not session_id.strip():
            raise ValueError("Session id must not be empty.")
        if history is None and self.history_store is not None:
            history = self.history_store.get_recent(
                session_id,
                self.config.agent.max_history_messages,
            )
        return WorkflowRun(
            session_id=session_id,
            query=query,
            history=list(history or []),
            max_retries=self.config.agent.max_retries,
        )

    def start_run(
        self,
        session_id: str,
        query: str,
        history: Sequence[Message] | None = None,
    ) -> ProgressBus:
        """Launch a run in the background and return its progress bus right away.

        Must be called with a running event loop. When ``history`` is omitted
        the recent messages of the session are read from the history store.
        """

        run = self.new_run(session_id, query, history)
        bus = ProgressBus(session_id, capacity=self.config.progress.buffer_size)
        task = asyncio.create_task(self._execute(run, bus), name=f"taskpilot-run-{session_id}")
        self._tasks[task] = session_id
        task.add_done_callback(self._forget)
        return bus

    def _forget(self, task: asyncio.Task[None]) -> None:
        self._tasks.pop(task, None)

    async def run_to_completion(
        self,
        session_id: str,
        query: str,
        history: Sequence[Message] | None = None,
    ) -> list[ProgressEvent]:
        bus = self.start_run(session_id, query, history)
        return [event async for event in bus]

    def active_sessions(self) -> list[str]:
        return sorted(set(self._tasks.values()))

    def cancel(self, session_id: str) -> bool:
        cancelled = False
        for task, owner in list(self._tasks.items()):
            if owner == session_id and not task.done():
                task.cancel()
                cancelled = True
        return cancelled
