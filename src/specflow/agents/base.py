from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


class AgentExecutionError(RuntimeError):
    """Raised when an agent process cannot be started or fails outright."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code
        self.retriable = retriable


class AgentTimeoutError(AgentExecutionError):
    """Raised when an agent invocation exceeds its timeout."""


@dataclass(slots=True)
class AgentRequest:
    prompt: str
    working_dir: Path
    tier: str | None = None
    skip_permissions: bool = False
    timeout_seconds: float | None = None


@dataclass(slots=True)
class AgentResult:
    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None
    retriable: bool = True


def tier_config_dir(tier: str | None) -> Path | None:
    if not tier:
        return None
    return Path.home() / f".claude-{tier}"


def agent_environment(tier: str | None, base: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    config_dir = tier_config_dir(tier)
    if config_dir is not None:
        env["CLAUDE_CONFIG_DIR"] = str(config_dir)
    return env


class AgentInvoker(ABC):
    @abstractmethod
    async def invoke(self, request: AgentRequest) -> AgentResult:
        """Run one prompt against the agent and report the outcome."""

    def abort(self) -> None:
        """Stop the in-flight invocation, if any."""
