from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

WorkflowModeName = Literal["greenfield", "brownfield"]
LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

DEFAULT_CONFIG_FILE = "specflow.toml"


@dataclass(slots=True)
class WorkflowConfig:
    default_mode: WorkflowModeName = "greenfield"
    checkpoint_interval: int = 3
    max_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    tasks_file: str = "tasks.md"


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    tier: str = ""
    timeout_seconds: float = 900.0
    skip_permissions: bool = False


@dataclass(slots=True)
class HooksConfig:
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class PluginsConfig:
    enabled: bool = True
    directories: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevelName = "WARNING"


@dataclass(slots=True)
class SpecflowConfig:
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    hooks: HooksConfig = field(default_factory=HooksConfig)
    plugins: PluginsConfig = field(default_factory=PluginsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> SpecflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SpecflowConfig:
        return cls(
            workflow=WorkflowConfig(**data.get("workflow", {})),
            agent=AgentConfig(**data.get("agent", {})),
            hooks=HooksConfig(**data.get("hooks", {})),
            plugins=PluginsConfig(**data.get("plugins", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "workflow": {
                "default_mode": self.workflow.default_mode,
                "checkpoint_interval": self.workflow.checkpoint_interval,
                "max_attempts": self.workflow.max_attempts,
                "retry_backoff_seconds": self.workflow.retry_backoff_seconds,
                "tasks_file": self.workflow.tasks_file,
            },
            "agent": {
                "binary": self.agent.binary,
                "tier": self.agent.tier,
                "timeout_seconds": self.agent.timeout_seconds,
                "skip_permissions": self.agent.skip_permissions,
            },
            "hooks": {
                "timeout_seconds": self.hooks.timeout_seconds,
            },
            "plugins": {
                "enabled": self.plugins.enabled,
                "directories": list(self.plugins.directories),
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SpecflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("workflow", "agent", "hooks", "plugins", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SpecflowConfig:
    if not path.exists():
        return SpecflowConfig.default()
    return SpecflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: SpecflowConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
