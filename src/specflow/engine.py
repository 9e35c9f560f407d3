"""Composition root that drives a feature flow through its phases.

The engine is the only writer of flow state. Every transition goes through
:class:`~specflow.flow.machine.FlowMachine`, is persisted, and only then is
announced to subscribers.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Literal

from specflow.agents.base import AgentInvoker
from specflow.agents.claude import ClaudeAgentInvoker
from specflow.agents.phase_executor import PhaseExecutionResult, PhaseExecutor
from specflow.config import SpecflowConfig
from specflow.errors import FlowNotFoundError, FlowStateError, SpecflowError
from specflow.flow.machine import FlowMachine
from specflow.flow.observers import ListenerSet, Subscription
from specflow.flow.task_runner import (
    CheckpointCallback,
    TaskExecutionOptions,
    TaskRunner,
)
from specflow.flow.tasks import TaskParser
from specflow.flow.types import (
    APPROVAL_PHASES,
    GENERATING_PHASES,
    TERMINAL_PHASES,
    FlowEvent,
    FlowMetadata,
    FlowPhase,
    FlowState,
    WorkflowMode,
)
from specflow.plugins.extensions.hooks import HookRunner
from specflow.plugins.types import HookContext, HookExecutionResult, HookPhase, freeze_mapping
from specflow.state.commits import CommitService
from specflow.state.store import STATE_DIR_NAME, FlowStateStore, sanitize_feature_name

logger = logging.getLogger(__name__)

# Generating phases without an entry run no plugin hooks.
HOOK_PHASES: dict[str, HookPhase] = {
    "requirements-generating": "requirements",
    "design-generating": "design",
    "tasks-generating": "tasks",
    "implementing": "implementation",
}

FlowListener = Callable[[FlowState], None]
Validator = Callable[[FlowState], Awaitable[PhaseExecutionResult]]
RecoveryAction = Literal["retry", "resume", "abort", "archive"]


@dataclass(frozen=True, slots=True)
class DriveOutcome:
    """Where a drive stopped, plus the veto that stopped it, if any."""

    state: FlowState
    veto_reason: str | None = None
    veto_plugin: str | None = None

    @property
    def vetoed(self) -> bool:
        return self.veto_reason is not None


@dataclass(frozen=True, slots=True)
class RecoverySuggestion:
    action: RecoveryAction
    command: str
    description: str


def _veto_outcome(state: FlowState, result: HookExecutionResult) -> DriveOutcome:
    logger.warning(
        "Phase %s of %s vetoed by plugin %s: %s",
        state.phase.type,
        state.feature,
        result.veto_plugin,
        result.veto_reason,
    )
    return DriveOutcome(state, result.veto_reason, result.veto_plugin)


class WorkflowEngine:
    def __init__(
        self,
        repo_root: Path,
        *,
        store: FlowStateStore,
        phase_executor: PhaseExecutor,
        task_runner: TaskRunner,
        task_parser: TaskParser | None = None,
        hooks: HookRunner | None = None,
        validator: Validator | None = None,
        checkpoint: CheckpointCallback | None = None,
        default_mode: WorkflowMode | str = WorkflowMode.GREENFIELD,
        skip_permissions: bool = False,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.store = store
        self.phase_executor = phase_executor
        self.task_runner = task_runner
        self.task_parser = task_parser or TaskParser()
        self.hooks = hooks
        self.validator = validator
        self.checkpoint = checkpoint
        self.default_mode = WorkflowMode(default_mode)
        self.skip_permissions = skip_permissions
        self._listeners: ListenerSet[FlowState] = ListenerSet()
        self._running: set[str] = set()

    @classmethod
    def from_config(
        cls,
        repo_root: Path,
        config: SpecflowConfig,
        *,
        agent_invoker: AgentInvoker | None = None,
        hooks: HookRunner | None = None,
        checkpoint: CheckpointCallback | None = None,
    ) -> WorkflowEngine:
        invoker = agent_invoker or ClaudeAgentInvoker(
            binary=config.agent.binary, default_timeout_seconds=config.agent.timeout_seconds
        )
        workflow = config.workflow
        return cls(
            repo_root,
            store=FlowStateStore(repo_root),
            phase_executor=PhaseExecutor(
                invoker,
                max_attempts=workflow.max_attempts,
                backoff_seconds=workflow.retry_backoff_seconds,
                skip_permissions=config.agent.skip_permissions,
                timeout_seconds=config.agent.timeout_seconds,
            ),
            task_runner=TaskRunner(
                invoker,
                CommitService(),
                checkpoint_interval=workflow.checkpoint_interval,
                max_attempts=workflow.max_attempts,
                backoff_seconds=workflow.retry_backoff_seconds,
                timeout_seconds=config.agent.timeout_seconds,
            ),
            task_parser=TaskParser(workflow.tasks_file),
            hooks=hooks,
            checkpoint=checkpoint,
            default_mode=workflow.default_mode,
            skip_permissions=config.agent.skip_permissions,
        )

    # Paths and lookups

    def spec_dir(self, feature: str) -> Path:
        return self.repo_root / STATE_DIR_NAME / "specs" / sanitize_feature_name(feature)

    def working_dir(self, state: FlowState) -> Path:
        worktree = state.metadata.worktree_path
        return Path(worktree) if worktree else self.repo_root

    def subscribe(self, listener: FlowListener) -> Subscription:
        return self._listeners.add(listener)

    def status(self, feature: str) -> FlowState | None:
        return self.store.load(feature)

    def list_flows(self) -> list[FlowState]:
        return self.store.list()

    def _require(self, feature: str) -> FlowState:
        state = self.store.load(feature)
        if state is None:
            raise FlowNotFoundError(f"No flow found for feature: {feature}")
        return state

    # Transitions

    def _apply(
        self, state: FlowState, event: FlowEvent, metadata: FlowMetadata | None = None
    ) -> FlowState:
        """Send ``event`` through the machine, persist the result, then notify."""
        saved: list[FlowState] = []

        def persist(next_phase: FlowPhase) -> None:
            candidate = replace(
                state,
                phase=next_phase,
                metadata=metadata or state.metadata,
                history=[*state.history, next_phase],
            )
            self.store.save(candidate)
            saved.append(candidate)

        mode = state.mode if state.phase.type != "idle" else None
        FlowMachine(state.phase, mode).send(event, persist)
        updated = saved[0]
        logger.debug("%s: %s -> %s", updated.feature, state.phase.type, updated.phase.type)
        self._listeners.notify(updated)
        return updated

    def _restore(self, state: FlowState, phase: FlowPhase) -> FlowState:
        restored = replace(state, phase=phase, history=[*state.history, phase])
        self.store.save(restored)
        self._listeners.notify(restored)
        return restored

    # Hooks

    def _hook_context(self, state: FlowState, phase: HookPhase, timing: str) -> HookContext:
        spec_metadata = {
            "description": state.metadata.description,
            "mode": state.mode.value,
            "tier": state.metadata.tier,
            "specDir": str(self.spec_dir(state.feature)),
        }
        return HookContext(
            phase=phase,
            timing=timing,
            feature=state.feature,
            spec_metadata=freeze_mapping(copy.deepcopy(spec_metadata)),
            flow_state=freeze_mapping(copy.deepcopy(state.to_dict())),
        )

    async def _pre_hooks(self, state: FlowState) -> HookExecutionResult | None:
        hook_phase = HOOK_PHASES.get(state.phase.type)
        if self.hooks is None or hook_phase is None:
            return None
        return await self.hooks.run_pre_phase_hooks(
            hook_phase, self._hook_context(state, hook_phase, "pre")
        )

    async def _post_hooks(self, state: FlowState) -> None:
        hook_phase = HOOK_PHASES.get(state.phase.type)
        if self.hooks is None or hook_phase is None:
            return
        await self.hooks.run_post_phase_hooks(
            hook_phase, self._hook_context(state, hook_phase, "post")
        )

    # Phase work

    async def _run_generating(self, state: FlowState) -> DriveOutcome:
        pre = await self._pre_hooks(state)
        if pre is not None and pre.vetoed:
            return _veto_outcome(state, pre)

        logger.info("Running %s for %s", state.phase.type, state.feature)
        result = await self.phase_executor.execute(
            state.phase, self.working_dir(state), tier=state.metadata.tier
        )
        if not result.success:
            return DriveOutcome(self._apply(state, FlowEvent.error(result.error or "Phase failed")))

        await self._post_hooks(state)
        return DriveOutcome(self._apply(state, FlowEvent.phase_complete()))

    async def _run_implementation(self, state: FlowState) -> DriveOutcome:
        pre = await self._pre_hooks(state)
        if pre is not None and pre.vetoed:
            return _veto_outcome(state, pre)

        spec_dir = self.spec_dir(state.feature)
        tasks = self.task_parser.parse(spec_dir)
        if not tasks:
            message = f"No tasks found in {spec_dir / self.task_parser.file_name}"
            return DriveOutcome(self._apply(state, FlowEvent.error(message)))

        current = state

        def on_progress(completed: int, total: int) -> None:
            nonlocal current
            current = self._apply(current, FlowEvent.task_complete(completed, total))

        options = TaskExecutionOptions(
            feature=state.feature,
            tasks=tasks,
            working_dir=self.working_dir(state),
            start_from_task=state.phase.current_task or 0,
            tier=state.metadata.tier,
            skip_permissions=self.skip_permissions,
            on_progress=on_progress,
            on_checkpoint=self.checkpoint,
        )
        try:
            result = await self.task_runner.execute(options)
        except (SpecflowError, ValueError, OSError) as exc:
            logger.exception("Task execution for %s failed", state.feature)
            return DriveOutcome(self._apply(current, FlowEvent.error(str(exc))))

        if result.aborted:
            return DriveOutcome(
                self._apply(current, FlowEvent.abort(result.error or "Execution aborted by user"))
            )
        if not result.success:
            return DriveOutcome(
                self._apply(current, FlowEvent.error(result.error or "Task execution failed"))
            )
        if result.paused_at is not None:
            logger.info("Paused %s at task %d/%d", state.feature, result.paused_at, len(tasks))
            return DriveOutcome(self._apply(current, FlowEvent.pause()))

        await self._post_hooks(current)
        return DriveOutcome(self._apply(current, FlowEvent.phase_complete()))

    async def _run_validation(self, state: FlowState) -> DriveOutcome:
        if self.validator is not None:
            result = await self.validator(state)
            if not result.success:
                message = result.error or "Validation failed"
                return DriveOutcome(self._apply(state, FlowEvent.error(message)))
        return DriveOutcome(self._apply(state, FlowEvent.phase_complete()))

    async def _step(self, state: FlowState) -> DriveOutcome | None:
        kind = state.phase.type
        if kind in GENERATING_PHASES:
            return await self._run_generating(state)
        if kind == "implementing":
            return await self._run_implementation(state)
        if kind == "validation":
            return await self._run_validation(state)
        return None

    async def drive(self, feature: str) -> DriveOutcome:
        """Advance ``feature`` until it needs a decision, is vetoed or stops."""
        state = self._require(feature)
        if state.feature in self._running:
            raise FlowStateError(f"Flow {state.feature} is already running")
        self._running.add(state.feature)
        try:
            while True:
                outcome = await self._step(state)
                if outcome is None:
                    return DriveOutcome(state)
                if outcome.vetoed or outcome.state.phase.type == state.phase.type:
                    return outcome
                state = outcome.state
        finally:
            self._running.discard(state.feature)

    # Operations

    async def start(
        self,
        feature: str,
        description: str,
        mode: WorkflowMode | str | None = None,
        *,
        tier: str | None = None,
        worktree_path: str | None = None,
    ) -> DriveOutcome:
        name = sanitize_feature_name(feature)
        if not name:
            raise FlowStateError(f"Feature name has no usable characters: {feature!r}")
        if self.store.exists(name):
            existing = self.store.load(name)
            phase = existing.phase.type if existing else "unreadable"
            raise FlowStateError(
                f"Flow {name} already exists (phase: {phase}); archive it before starting again"
            )
        bound_mode = WorkflowMode(mode) if mode is not None else self.default_mode
        idle = FlowState(
            feature=name,
            phase=FlowPhase("idle"),
            metadata=FlowMetadata(
                description=description,
                mode=bound_mode,
                tier=tier or None,
                worktree_path=worktree_path,
            ),
        )
        self._apply(idle, FlowEvent.start(name, description, bound_mode))
        logger.info("Started %s flow %s", bound_mode.value, name)
        return await self.drive(name)

    async def resume(self, feature: str) -> DriveOutcome:
        state = self._require(feature)
        if state.phase.type in TERMINAL_PHASES:
            raise FlowStateError(
                f"Flow {state.feature} is {state.phase.type}; nothing to resume"
            )
        if state.phase.type == "paused":
            self._apply(state, FlowEvent.resume(state.feature))
        return await self.drive(state.feature)

    async def retry(self, feature: str) -> DriveOutcome:
        """Restore the phase that failed and run it again."""
        state = self._require(feature)
        if state.phase.type != "error":
            raise FlowStateError(f"Flow {state.feature} is not in an error phase")
        failed = next(
            (
                phase
                for phase in reversed(state.history)
                if phase.type not in TERMINAL_PHASES and phase.type != "idle"
            ),
            None,
        )
        if failed is None:
            raise FlowStateError(f"Flow {state.feature} has no phase to retry")
        logger.info("Retrying %s from %s", state.feature, failed.type)
        self._restore(state, failed)
        return await self.drive(state.feature)

    async def approve(self, feature: str) -> DriveOutcome:
        state = self._apply(self._require(feature), FlowEvent.approve())
        return await self.drive(state.feature)

    async def reject(self, feature: str) -> DriveOutcome:
        state = self._apply(self._require(feature), FlowEvent.reject())
        return await self.drive(state.feature)

    def pause(self, feature: str) -> FlowState:
        return self._apply(self._require(feature), FlowEvent.pause())

    def abort(self, feature: str, reason: str = "Aborted by user") -> FlowState:
        state = self._require(feature)
        if state.feature in self._running:
            self.task_runner.abort()
        return self._apply(state, FlowEvent.abort(reason))

    def record_pull_request(
        self, feature: str, url: str, number: int | None = None
    ) -> FlowState:
        state = self._require(feature)
        metadata = replace(state.metadata, pr_url=url, pr_number=number)
        return self._apply(state, FlowEvent.pr_created(url), metadata)

    def merge(self, feature: str, *, skip: bool = False) -> FlowState:
        event = FlowEvent.skip_merge() if skip else FlowEvent.merge()
        return self._apply(self._require(feature), event)

    def archive(self, feature: str, *, force: bool = False) -> Path:
        state = self._require(feature)
        if state.phase.type not in TERMINAL_PHASES and not force:
            raise FlowStateError(
                f"Flow {state.feature} is still {state.phase.type}; abort it or pass force"
            )
        return self.store.archive(state.feature)

    @staticmethod
    def recovery_suggestions(state: FlowState) -> list[RecoverySuggestion]:
        feature = state.feature
        kind = state.phase.type
        suggestions: list[RecoverySuggestion] = []

        def suggest(action: RecoveryAction, description: str) -> None:
            suggestions.append(
                RecoverySuggestion(action, f"specflow {action} {feature}", description)
            )

        if kind == "error":
            suggest("retry", "Run the failed phase again")
            suggest("archive", "Archive the flow and start over")
        elif kind == "aborted":
            suggest("archive", "Archive the aborted flow")
        elif kind == "paused":
            suggest("resume", f"Continue from task {(state.phase.paused_at or 0) + 1}")
            suggest("abort", "Stop the flow for good")
        elif kind not in APPROVAL_PHASES and kind not in {"pr", "merge-decision", "complete"}:
            suggest("resume", f"Continue the interrupted {kind} phase")
            suggest("abort", "Stop the flow for good")
        return suggestions

    def describe(self, state: FlowState) -> dict[str, Any]:
        payload = state.to_dict()
        payload["specDir"] = str(self.spec_dir(state.feature))
        payload["suggestions"] = [
            {"action": item.action, "command": item.command, "description": item.description}
            for item in self.recovery_suggestions(state)
        ]
        return payload
