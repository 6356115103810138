from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ProviderName = Literal["openai"]
StorageBackendName = Literal["disk", "memory"]

DEFAULT_SEVERE_ERROR_KEYWORDS = [
    "401",
    "403",
    "authorization failed",
    "permission denied",
    "认证失败",
    "权限不足",
    "500",
    "502",
    "503",
    "504",
    "timeout",
    "connection failed",
    "server error",
    "超时",
    "连接失败",
    "网络错误",
    "服务器错误",
    "syntax error",
    "compilation failed",
    "parse error",
    "语法错误",
    "编译失败",
    "no such file or directory",
    "file not found",
    "access denied",
    "disk full",
    "文件不存在",
    "访问被拒绝",
    "磁盘空间不足",
]


@dataclass(slots=True)
class AgentConfig:
    max_history_messages: int = 20
    max_retries: int = 3
    max_steps: int = 1000
    run_timeout_seconds: float = 3600.0
    plan_prompt: str = ""
    execute_prompt: str = ""
    update_prompt: str = ""
    summary_prompt: str = ""


@dataclass(slots=True)
class BackendConfig:
    primary: ProviderName = "openai"
    fallback: ProviderName = "openai"
    model: str = "gpt-4o-mini"
    base_url: str = ""
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class ProgressConfig:
    buffer_size: int = 100


@dataclass(slots=True)
class StorageConfig:
    backend: StorageBackendName = "disk"
    data_dir: str = ".taskpilot"


@dataclass(slots=True)
class PolicyConfig:
    severe_error_keywords: list[str] = field(
        default_factory=lambda: list(DEFAULT_SEVERE_ERROR_KEYWORDS)
    )
    tool_error_marker: str = "error"


@dataclass(slots=True)
class LogConfig:
    level: str = "WARNING"


@dataclass(slots=True)
class TaskpilotConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def default(cls) -> TaskpilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskpilotConfig:
        return cls(
            agent=AgentConfig(**data.get("agent", {})),
            backend=BackendConfig(**data.get("backend", {})),
            progress=ProgressConfig(**data.get("progress", {})),
            storage=StorageConfig(**data.get("storage", {})),
            policy=PolicyConfig(**data.get("policy", {})),
            log=LogConfig(**data.get("log", {})),
        )

    def to_dict(self) -> dict:
        return {
            "agent": {
                "max_history_messages": self.agent.max_history_messages,
                "max_retries": self.agent.max_retries,
                "max_steps": self.agent.max_steps,
                "run_timeout_seconds": self.agent.run_timeout_seconds,
                "plan_prompt": self.agent.plan_prompt,
                "execute_prompt": self.agent.execute_prompt,
                "update_prompt": self.agent.update_prompt,
                "summary_prompt": self.agent.summary_prompt,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "model": self.backend.model,
                "base_url": self.backend.base_url,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "progress": {
                "buffer_size": self.progress.buffer_size,
            },
            "storage": {
                "backend": self.storage.backend,
                "data_dir": self.storage.data_dir,
            },
            "policy": {
                "severe_error_keywords": list(self.policy.severe_error_keywords),
                "tool_error_marker": self.policy.tool_error_marker,
            },
            "log": {
                "level": self.log.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskpilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["agent", "backend", "progress", "storage", "policy", "log"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskpilotConfig:
    if not path.exists():
        return TaskpilotConfig.default()
    return TaskpilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: TaskpilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
