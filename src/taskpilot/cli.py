from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskpilot.chat import ChatModel, Message, OpenAIChatModel, ResilientChatModel, RetryPolicy
from taskpilot.config import ProviderName, TaskpilotConfig, load_config, save_config
from taskpilot.plan.manager import PlanManager
from taskpilot.progress import EventKind, ProgressEvent
from taskpilot.runner import WorkflowRunner
from taskpilot.state import (
    DiskHistoryStore,
    DiskPlanStore,
    HistoryStore,
    MemoryHistoryStore,
    MemoryPlanStore,
    PlanStore,
    PlanStoreError,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "taskpilot.toml"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    work_dir: Path
    config_path: Path
    config: TaskpilotConfig
    plan_store: PlanStore
    history_store: HistoryStore
    runner: WorkflowRunner


def _resolve_config_path(work_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = work_dir / config_path
    return config_path.resolve()


def _configure_logging(level: str) -> None:
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise click.ClickException(f"Unknown log level: {level}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT, force=True)


def _data_dir(work_dir: Path, config: TaskpilotConfig) -> Path:
    data_dir = Path(config.storage.data_dir)
    if not data_dir.is_absolute():
        data_dir = work_dir / data_dir
    return data_dir.resolve()


def _build_stores(work_dir: Path, config: TaskpilotConfig) -> tuple[PlanStore, HistoryStore]:
    if config.storage.backend == "memory":
        return MemoryPlanStore(), MemoryHistoryStore()
    data_dir = _data_dir(work_dir, config)
    return DiskPlanStore(data_dir), DiskHistoryStore(data_dir)


def _build_single_model(provider: ProviderName, config: TaskpilotConfig) -> ChatModel:
    if provider == "openai":
        return OpenAIChatModel(model=config.backend.model, base_url=config.backend.base_url)
    raise click.ClickException(f"Unsupported chat model provider: {provider}")


def _record_model_event(event: dict[str, Any]) -> None:
    if event.get("event") == "model_attempt_failed":
        logger.warning("chat model attempt failed: %s", event)
    else:
        logger.info("chat model event: %s", event)


def _build_model(config: TaskpilotConfig) -> ChatModel:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientChatModel(
        primary_name=config.backend.primary,
        primary_model=_build_single_model(config.backend.primary, config),
        fallback_name=config.backend.fallback,
        fallback_model=_build_single_model(config.backend.fallback, config),
        retry_policy=policy,
        event_hook=_record_model_event,
    )


def _load_runtime(work_dir: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    _configure_logging(config.log.level)
    plan_store, history_store = _build_stores(work_dir, config)
    runner = WorkflowRunner(
        _build_model(config),
        plan_store=plan_store,
        history_store=history_store,
        config=config,
    )
    return Runtime(
        work_dir=work_dir,
        config_path=config_path,
        config=config,
        plan_store=plan_store,
        history_store=history_store,
        runner=runner,
    )


def _echo_event(event: ProgressEvent) -> None:
    if event.kind is EventKind.RESULT_CHUNK:
        click.echo(event.message, nl=False)
        return
    if event.kind is EventKind.ERROR:
        click.echo(f"\n[error] {event.message} {event.error or ''}".rstrip(), err=True)
        return
    if event.kind is EventKind.DONE:
        click.echo(f"\n[done] {event.message}")
        return
    click.echo(f"[{event.label}] {event.message}")


async def _stream_run(
    runtime: Runtime,
    session_id: str,
    query: str,
    as_json: bool,
) -> tuple[str, ProgressEvent | None]:
    bus = runtime.runner.start_run(session_id, query)
    runtime.history_store.append(session_id, Message.user(query))

    answer: list[str] = []
    terminal: ProgressEvent | None = None
    async for event in bus:
        if as_json:
            click.echo(json.dumps(event.to_dict(), ensure_ascii=False))
        else:
            _echo_event(event)
        if event.kind is EventKind.RESULT_CHUNK:
            answer.append(event.message)
        if event.kind.terminal:
            terminal = event
    return "".join(answer), terminal


@click.group()
def cli() -> None:
    """Taskpilot CLI."""


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(config_value: str) -> None:
    work_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(work_dir, config_value)
    config = load_config(config_path)
    save_config(config_path, config)

    data_dir = _data_dir(work_dir, config)
    if config.storage.backend == "disk":
        data_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized taskpilot in {work_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Model: {config.backend.primary}/{config.backend.model}")
    click.echo(f"Storage: {config.storage.backend} ({data_dir})")


@cli.command("run")
@click.argument("query")
@click.option("--session", "session_id", default="default", show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(query: str, session_id: str, as_json: bool, config_value: str) -> None:
    work_dir = Path.cwd().resolve()
    runtime = _load_runtime(work_dir, _resolve_config_path(work_dir, config_value))
    try:
        answer, terminal = asyncio.run(_stream_run(runtime, session_id, query, as_json))
    except (ValueError, PlanStoreError) as exc:
        raise click.ClickException(str(exc)) from exc

    if answer:
        runtime.history_store.append(session_id, Message.assistant(answer))
    if terminal is None:
        raise click.ClickException("Run ended without a terminal event.")
    if terminal.kind is EventKind.ERROR:
        raise click.ClickException(f"Run failed: {terminal.error or terminal.message}")


@cli.group("plan")
def plan_group() -> None:
    """Inspect stored task lists."""


@plan_group.command("show")
@click.argument("session_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def plan_show_command(session_id: str, config_value: str) -> None:
    work_dir = Path.cwd().resolve()
    config = load_config(_resolve_config_path(work_dir, config_value))
    plan_store, _ = _build_stores(work_dir, config)
    try:
        plan = PlanManager(plan_store).latest(session_id)
    except PlanStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    if plan.is_empty:
        click.echo(f"No plan found for session {session_id}.")
        return
    click.echo(f"Session: {session_id}")
    click.echo(f"Version: v{plan.version}")
    click.echo(plan.text)


@cli.command("history")
@click.argument("session_id")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def history_command(session_id: str, limit: int, config_value: str) -> None:
    work_dir = Path.cwd().resolve()
    config = load_config(_resolve_config_path(work_dir, config_value))
    _, history_store = _build_stores(work_dir, config)
    messages = history_store.get_recent(session_id, limit)
    if not messages:
        click.echo(f"No messages for session {session_id}.")
        return
    for message in messages:
        click.echo(f"{message.role}: {message.content}")
