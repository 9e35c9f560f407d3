from __future__ import annotations

import asyncio
import inspect
import logging
import subprocess
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from specflow.agents.base import AgentExecutionError, AgentInvoker, AgentRequest, AgentResult
from specflow.agents.phase_executor import build_task_prompt
from specflow.errors import SpecflowError
from specflow.flow.tasks import Task
from specflow.state.commits import CommitResult

logger = logging.getLogger(__name__)

TaskStatus = Literal[
    "pending", "running", "succeeded", "failed", "retrying", "checkpoint-pending"
]
CheckpointDecision = Literal["continue", "pause", "abort"]
CHECKPOINT_DECISIONS = frozenset({"continue", "pause", "abort"})

ProgressCallback = Callable[[int, int], None]
CheckpointCallback = Callable[[int, int], Any]
Sleep = Callable[[float], Awaitable[None]]

_TASK_MOVES: dict[str, frozenset[str]] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"succeeded", "failed"}),
    "failed": frozenset({"retrying"}),
    "retrying": frozenset({"running"}),
    "succeeded": frozenset({"checkpoint-pending"}),
    "checkpoint-pending": frozenset(),
}


class TaskStateError(SpecflowError):
    """Raised when a task execution is moved along an edge it does not have."""


class CommitCollaborator(Protocol):
    def stage_and_commit(self, working_dir: Path, message: str) -> CommitResult: ...

    def format_task_commit_message(self, feature: str, task_index: int, task_title: str) -> str: ...


@dataclass(slots=True)
class TaskExecution:
    task: Task
    index: int
    status: TaskStatus = "pending"
    attempts: int = 0
    last_error: str | None = None
    commit_hash: str | None = None

    def _move(self, target: TaskStatus) -> None:
        if target not in _TASK_MOVES[self.status]:
            raise TaskStateError(f"Task {self.task.id} cannot move from {self.status} to {target}")
        self.status = target

    def start(self) -> None:
        self._move("running")
        self.attempts += 1

    def succeed(self, commit_hash: str | None = None) -> None:
        self._move("succeeded")
        self.commit_hash = commit_hash
        self.last_error = None

    def fail(self, error: str) -> None:
        self._move("failed")
        self.last_error = error

    def schedule_retry(self) -> None:
        self._move("retrying")

    def await_checkpoint(self) -> None:
        self._move("checkpoint-pending")

    def can_retry(self, max_attempts: int) -> bool:
        return self.status == "failed" and self.attempts < max_attempts


@dataclass(slots=True)
class TaskExecutionOptions:
    feature: str
    tasks: list[Task]
    working_dir: Path
    start_from_task: int = 0
    tier: str | None = None
    skip_permissions: bool = False
    on_progress: ProgressCallback | None = None
    on_checkpoint: CheckpointCallback | None = None


@dataclass(slots=True)
class TaskExecutionResult:
    success: bool
    completed_tasks: int
    total_tasks: int
    paused_at: int | None = None
    aborted: bool = False
    error: str | None = None
    failed_task: str | None = None
    executions: list[TaskExecution] = field(default_factory=list)


class TaskRunner:
    """Runs implementation tasks in order with commits, retries and checkpoints."""

    def __init__(
        self,
        agent_invoker: AgentInvoker,
        commit_service: CommitCollaborator,
        *,
        checkpoint_interval: int = 3,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout_seconds: float | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.agent_invoker = agent_invoker
        self.commit_service = commit_service
        self.checkpoint_interval = max(0, checkpoint_interval)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = max(0.0, backoff_seconds)
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._abort_requested = False

    @property
    def abort_requested(self) -> bool:
        return self._abort_requested

    def abort(self) -> None:
        """Request a cooperative stop; observed at the next suspension boundary."""
        self._abort_requested = True
        self.agent_invoker.abort()

    async def _invoke(self, request: AgentRequest) -> AgentResult:
        try:
            return await self.agent_invoker.invoke(request)
        except AgentExecutionError as exc:
            return AgentResult(success=False, error=str(exc), retriable=exc.retriable)

    async def _run_task(self, execution: TaskExecution, options: TaskExecutionOptions) -> None:
        request = AgentRequest(
            prompt=build_task_prompt(options.feature, execution.task.id),
            working_dir=options.working_dir,
            tier=options.tier,
            skip_permissions=options.skip_permissions,
            timeout_seconds=self.timeout_seconds,
        )
        while True:
            execution.start()
            result = await self._invoke(request)
            if self._abort_requested:
                execution.fail("Execution aborted by user")
                return
            if result.success:
                message = self.commit_service.format_task_commit_message(
                    options.feature, execution.index + 1, execution.task.title
                )
                try:
                    commit = self.commit_service.stage_and_commit(options.working_dir, message)
                except (OSError, subprocess.SubprocessError) as exc:
                    execution.fail(f"Commit failed: {exc}")
                    return
                if not commit.success:
                    execution.fail(f"Commit failed: {commit.error}")
                    return
                execution.succeed(commit.commit_hash)
                return

            execution.fail(result.error or "agent reported failure")
            logger.warning(
                "Task %s attempt %d failed: %s",
                execution.task.id,
                execution.attempts,
                execution.last_error,
            )
            if not result.retriable or not execution.can_retry(self.max_attempts):
                return
            execution.schedule_retry()
            delay = self.backoff_seconds * (2 ** (execution.attempts - 1))
            await self._sleep(delay)
            if self._abort_requested:
                return

    async def _checkpoint(
        self, options: TaskExecutionOptions, completed: int, total: int
    ) -> CheckpointDecision:
        if options.on_checkpoint is None:
            return "continue"
        decision = options.on_checkpoint(completed, total)
        if inspect.isawaitable(decision):
            decision = await decision
        if decision not in CHECKPOINT_DECISIONS:
            raise ValueError(f"Unknown checkpoint decision: {decision!r}")
        return decision

    async def execute(self, options: TaskExecutionOptions) -> TaskExecutionResult:
        self._abort_requested = False
        total = len(options.tasks)
        completed = max(0, min(options.start_from_task, total))
        executions: list[TaskExecution] = []

        def _aborted() -> TaskExecutionResult:
            return TaskExecutionResult(
                success=False,
                completed_tasks=completed,
                total_tasks=total,
                aborted=True,
                error="Execution aborted by user",
                executions=executions,
            )

        for index in range(completed, total):
            if self._abort_requested:
                return _aborted()

            execution = TaskExecution(task=options.tasks[index], index=index)
            executions.append(execution)
            await self._run_task(execution, options)

            if self._abort_requested and execution.status != "succeeded":
                return _aborted()
            if execution.status != "succeeded":
                return TaskExecutionResult(
                    success=False,
                    completed_tasks=completed,
                    total_tasks=total,
                    error=f"Task {execution.task.id} failed: {execution.last_error}",
                    failed_task=execution.task.id,
                    executions=executions,
                )

            completed += 1
            logger.info("Completed task %s (%d/%d)", execution.task.id, completed, total)
            if options.on_progress is not None:
                options.on_progress(completed, total)

            interval = self.checkpoint_interval
            if interval and completed % interval == 0 and completed < total:
                execution.await_checkpoint()
                decision = await self._checkpoint(options, completed, total)
                if decision == "pause":
                    return TaskExecutionResult(
                        success=True,
                        completed_tasks=completed,
                        total_tasks=total,
                        paused_at=completed,
                        executions=executions,
                    )
                if decision == "abort":
                    self._abort_requested = True
                    return _aborted()

        return TaskExecutionResult(
            success=True, completed_tasks=completed, total_tasks=total, executions=executions
        )
