from __future__ import annotations

import logging
from collections.abc import Callable

from specflow.errors import InvalidTransitionError, ModeLockedError
from specflow.flow.observers import ListenerSet, Subscription
from specflow.flow.types import FlowEvent, FlowPhase, PhaseType, WorkflowMode

logger = logging.getLogger(__name__)

GREENFIELD_SEQUENCE: tuple[PhaseType, ...] = (
    "initializing",
    "requirements-generating",
    "requirements-approval",
    "design-generating",
    "design-approval",
    "tasks-generating",
    "tasks-approval",
    "implementing",
    "validation",
    "pr",
    "merge-decision",
    "complete",
)

BROWNFIELD_SEQUENCE: tuple[PhaseType, ...] = (
    "initializing",
    "requirements-generating",
    "requirements-approval",
    "gap-analysis",
    "gap-review",
    "design-generating",
    "design-approval",
    "design-validation",
    "design-validation-review",
    "tasks-generating",
    "tasks-approval",
    "implementing",
    "validation",
    "pr",
    "merge-decision",
    "complete",
)

# Review phases point back at the phase that produced the artifact under review.
REJECT_TARGETS: dict[str, PhaseType] = {
    "requirements-approval": "requirements-generating",
    "gap-review": "gap-analysis",
    "design-approval": "design-generating",
    "design-validation-review": "design-validation",
    "tasks-approval": "tasks-generating",
}

# Phases advanced by PHASE_COMPLETE once their work is done.
WORK_PHASES = frozenset(
    {
        "initializing",
        "requirements-generating",
        "gap-analysis",
        "design-generating",
        "design-validation",
        "tasks-generating",
        "validation",
    }
)


def phase_sequence(mode: WorkflowMode | str) -> tuple[PhaseType, ...]:
    if WorkflowMode(mode) is WorkflowMode.BROWNFIELD:
        return BROWNFIELD_SEQUENCE
    return GREENFIELD_SEQUENCE


def _next_in_sequence(phase_type: str, mode: WorkflowMode | None) -> PhaseType | None:
    if mode is None:
        return None
    sequence = phase_sequence(mode)
    if phase_type not in sequence:
        return None
    index = sequence.index(phase_type)
    if index + 1 >= len(sequence):
        return None
    return sequence[index + 1]


def _evaluate(phase: FlowPhase, event: FlowEvent, mode: WorkflowMode | None) -> FlowPhase | None:
    """Return the next phase for a legal edge, or None when the edge does not exist."""
    kind = phase.type
    feature = phase.feature

    if event.type == "ABORT":
        if phase.is_terminal or kind == "idle":
            return None
        return FlowPhase("aborted", feature=feature, reason=event.reason or "Aborted by user")

    if event.type == "ERROR":
        if phase.is_terminal or kind == "idle":
            return None
        return FlowPhase("error", feature=feature, error=event.message or "Unknown error")

    if kind == "idle":
        if event.type != "START" or event.mode is None or not event.feature:
            return None
        return FlowPhase(
            "initializing", feature=event.feature, description=event.description or ""
        )

    if mode is None or (kind not in phase_sequence(mode) and kind != "paused"):
        return None

    if kind in WORK_PHASES:
        if event.type != "PHASE_COMPLETE":
            return None
        next_type = _next_in_sequence(kind, mode)
        return FlowPhase(next_type, feature=feature) if next_type else None

    if kind in REJECT_TARGETS:
        if event.type == "REJECT":
            return FlowPhase(REJECT_TARGETS[kind], feature=feature)
        if event.type != "APPROVE":
            return None
        next_type = _next_in_sequence(kind, mode)
        if next_type == "implementing":
            return FlowPhase("implementing", feature=feature, current_task=0, total_tasks=0)
        return FlowPhase(next_type, feature=feature) if next_type else None

    if kind == "implementing":
        current = phase.current_task or 0
        total = phase.total_tasks or 0
        if event.type == "TASK_COMPLETE":
            if event.task_index is None or event.task_index < 0:
                return None
            return phase.evolve(
                current_task=event.task_index,
                total_tasks=max(total, event.total_tasks or 0, event.task_index),
            )
        if event.type == "PAUSE":
            return FlowPhase("paused", feature=feature, paused_at=current, total_tasks=total)
        if event.type == "PHASE_COMPLETE":
            return FlowPhase("validation", feature=feature)
        return None

    if kind == "paused":
        if event.type != "RESUME":
            return None
        return FlowPhase(
            "implementing",
            feature=feature,
            current_task=phase.paused_at or 0,
            total_tasks=phase.total_tasks or 0,
        )

    if kind == "pr":
        if event.type != "PR_CREATED" or not event.url:
            return None
        return FlowPhase("merge-decision", feature=feature, pr_url=event.url)

    if kind == "merge-decision":
        if event.type not in {"MERGE", "SKIP_MERGE"}:
            return None
        return FlowPhase("complete", feature=feature)

    return None


def _diagnostic(phase: FlowPhase, event: FlowEvent, mode: WorkflowMode | None) -> str:
    mode_label = mode.value if mode is not None else "unbound"
    return f"Invalid transition: {event.type} is not allowed from {phase.type} ({mode_label} mode)"


def transition(
    phase: FlowPhase, event: FlowEvent, mode: WorkflowMode | str | None
) -> FlowPhase:
    """Compute the phase that follows ``phase`` when ``event`` arrives.

    The function is pure. Edges that do not exist in the sequence for ``mode``
    produce an ``error`` phase carrying a diagnostic message.
    """
    bound_mode = WorkflowMode(mode) if mode is not None else None
    next_phase = _evaluate(phase, event, bound_mode)
    if next_phase is None:
        message = _diagnostic(phase, event, bound_mode)
        return FlowPhase("error", feature=phase.feature, error=message)
    return next_phase


def is_legal(phase: FlowPhase, event: FlowEvent, mode: WorkflowMode | str | None) -> bool:
    bound_mode = WorkflowMode(mode) if mode is not None else None
    return _evaluate(phase, event, bound_mode) is not None


PhaseListener = Callable[[FlowPhase], None]
PersistCallback = Callable[[FlowPhase], None]


class FlowMachine:
    """Stateful wrapper around :func:`transition` for a single flow."""

    def __init__(
        self, phase: FlowPhase | None = None, mode: WorkflowMode | str | None = None
    ) -> None:
        self._phase = phase or FlowPhase("idle")
        self._mode = WorkflowMode(mode) if mode is not None else None
        self._listeners: ListenerSet[FlowPhase] = ListenerSet()

    @property
    def phase(self) -> FlowPhase:
        return self._phase

    @property
    def mode(self) -> WorkflowMode | None:
        return self._mode

    def subscribe(self, listener: PhaseListener) -> Subscription:
        return self._listeners.add(listener)

    def send(self, event: FlowEvent, persist: PersistCallback | None = None) -> FlowPhase:
        """Apply ``event``; persist the result first, then notify listeners.

        Illegal edges raise without touching the current phase.
        """
        mode = self._mode
        if event.type == "START":
            if mode is not None and event.mode is not None and event.mode is not mode:
                raise ModeLockedError(
                    f"Workflow mode is locked to {mode.value}; cannot switch to {event.mode.value}"
                )
            mode = event.mode

        next_phase = _evaluate(self._phase, event, mode)
        if next_phase is None:
            message = _diagnostic(self._phase, event, mode)
            logger.debug(message)
            raise InvalidTransitionError(message, phase=self._phase.type, event=event.type)

        if persist is not None:
            persist(next_phase)
        self._phase = next_phase
        self._mode = mode
        self._listeners.notify(next_phase)
        return next_phase
