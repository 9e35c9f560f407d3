from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from specflow.agents.base import AgentExecutionError, AgentInvoker, AgentRequest, AgentResult
from specflow.flow.types import FlowPhase

logger = logging.getLogger(__name__)

PHASE_PROMPTS: dict[str, str] = {
    "initializing": '/specflow:spec-init "{feature}" "{description}"',
    "requirements-generating": "/specflow:spec-requirements {feature}",
    "gap-analysis": "/specflow:validate-gap {feature}",
    "design-generating": "/specflow:spec-design {feature}",
    "design-validation": "/specflow:validate-design {feature}",
    "tasks-generating": "/specflow:spec-tasks {feature}",
}

TASK_PROMPT = "/specflow:spec-impl {feature} {task_id}"

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class PhaseExecutionResult:
    success: bool
    output: str | None = None
    error: str | None = None
    attempts: int = 0


def build_phase_prompt(phase: FlowPhase) -> str | None:
    template = PHASE_PROMPTS.get(phase.type)
    if template is None:
        return None
    return template.format(feature=phase.feature, description=phase.description or "")


def build_task_prompt(feature: str, task_id: str) -> str:
    return TASK_PROMPT.format(feature=feature, task_id=task_id)


class PhaseExecutor:
    """Runs the agent work behind a generating phase, retrying failed attempts."""

    def __init__(
        self,
        agent_invoker: AgentInvoker,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        skip_permissions: bool = False,
        timeout_seconds: float | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.agent_invoker = agent_invoker
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = max(0.0, backoff_seconds)
        self.skip_permissions = skip_permissions
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep

    async def _invoke(self, request: AgentRequest) -> AgentResult:
        try:
            return await self.agent_invoker.invoke(request)
        except AgentExecutionError as exc:
            return AgentResult(
                success=False, error=str(exc), exit_code=exc.exit_code, retriable=exc.retriable
            )

    async def execute(
        self, phase: FlowPhase, working_dir: Path, *, tier: str | None = None
    ) -> PhaseExecutionResult:
        prompt = build_phase_prompt(phase)
        if prompt is None:
            return PhaseExecutionResult(success=True)

        request = AgentRequest(
            prompt=prompt,
            working_dir=working_dir,
            tier=tier,
            skip_permissions=self.skip_permissions,
            timeout_seconds=self.timeout_seconds,
        )
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                delay = self.backoff_seconds * (2 ** (attempt - 2))
                logger.info(
                    "Retrying %s for %s in %.1fs (attempt %d/%d)",
                    phase.type,
                    phase.feature,
                    delay,
                    attempt,
                    self.max_attempts,
                )
                await self._sleep(delay)
            result = await self._invoke(request)
            if result.success:
                return PhaseExecutionResult(success=True, output=result.output, attempts=attempt)
            last_error = result.error or "agent reported failure"
            logger.warning("Agent attempt %d for %s failed: %s", attempt, phase.type, last_error)
            if not result.retriable:
                return PhaseExecutionResult(success=False, error=last_error, attempts=attempt)

        return PhaseExecutionResult(
            success=False,
            error=f"Agent failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
        )
