from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

PhaseType = Literal[
    "idle",
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
    "paused",
    "validation",
    "pr",
    "merge-decision",
    "complete",
    "aborted",
    "error",
]

EventType = Literal[
    "START",
    "RESUME",
    "PHASE_COMPLETE",
    "APPROVE",
    "REJECT",
    "TASK_COMPLETE",
    "PAUSE",
    "ABORT",
    "ERROR",
    "PR_CREATED",
    "MERGE",
    "SKIP_MERGE",
]

TERMINAL_PHASES: frozenset[str] = frozenset({"complete", "aborted", "error"})
APPROVAL_PHASES: frozenset[str] = frozenset(
    {
        "requirements-approval",
        "gap-review",
        "design-approval",
        "design-validation-review",
        "tasks-approval",
    }
)
GENERATING_PHASES: frozenset[str] = frozenset(
    {
        "initializing",
        "requirements-generating",
        "gap-analysis",
        "design-generating",
        "design-validation",
        "tasks-generating",
    }
)

# Phase names written by older releases.
LEGACY_PHASE_NAMES = {
    "requirements-review": "requirements-approval",
    "design-review": "design-approval",
    "tasks-review": "tasks-approval",
}


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class WorkflowMode(str, Enum):
    """Workflow shape chosen once when a flow starts."""

    GREENFIELD = "greenfield"
    BROWNFIELD = "brownfield"


@dataclass(frozen=True, slots=True)
class FlowPhase:
    type: PhaseType
    feature: str = ""
    description: str | None = None
    current_task: int | None = None
    total_tasks: int | None = None
    paused_at: int | None = None
    pr_url: str | None = None
    reason: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_PHASES

    def evolve(self, **changes: Any) -> FlowPhase:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        optional = {
            "feature": self.feature or None,
            "description": self.description,
            "currentTask": self.current_task,
            "totalTasks": self.total_tasks,
            "pausedAt": self.paused_at,
            "prUrl": self.pr_url,
            "reason": self.reason,
            "error": self.error,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FlowPhase:
        phase_type = str(payload.get("type", "idle"))
        phase_type = LEGACY_PHASE_NAMES.get(phase_type, phase_type)
        return cls(
            type=phase_type,  # type: ignore[arg-type]
            feature=str(payload.get("feature") or ""),
            description=payload.get("description"),
            current_task=payload.get("currentTask"),
            total_tasks=payload.get("totalTasks"),
            paused_at=payload.get("pausedAt"),
            pr_url=payload.get("prUrl"),
            reason=payload.get("reason"),
            error=payload.get("error"),
        )


@dataclass(frozen=True, slots=True)
class FlowEvent:
    type: EventType
    feature: str | None = None
    description: str | None = None
    mode: WorkflowMode | None = None
    task_index: int | None = None
    total_tasks: int | None = None
    reason: str | None = None
    message: str | None = None
    url: str | None = None
    data: dict[str, Any] | None = None

    @classmethod
    def start(cls, feature: str, description: str, mode: WorkflowMode | str) -> FlowEvent:
        return cls("START", feature=feature, description=description, mode=WorkflowMode(mode))

    @classmethod
    def resume(cls, feature: str) -> FlowEvent:
        return cls("RESUME", feature=feature)

    @classmethod
    def phase_complete(cls, data: dict[str, Any] | None = None) -> FlowEvent:
        return cls("PHASE_COMPLETE", data=data)

    @classmethod
    def approve(cls) -> FlowEvent:
        return cls("APPROVE")

    @classmethod
    def reject(cls) -> FlowEvent:
        return cls("REJECT")

    @classmethod
    def task_complete(cls, task_index: int, total_tasks: int | None = None) -> FlowEvent:
        return cls("TASK_COMPLETE", task_index=task_index, total_tasks=total_tasks)

    @classmethod
    def pause(cls) -> FlowEvent:
        return cls("PAUSE")

    @classmethod
    def abort(cls, reason: str) -> FlowEvent:
        return cls("ABORT", reason=reason)

    @classmethod
    def error(cls, message: str) -> FlowEvent:
        return cls("ERROR", message=message)

    @classmethod
    def pr_created(cls, url: str) -> FlowEvent:
        return cls("PR_CREATED", url=url)

    @classmethod
    def merge(cls) -> FlowEvent:
        return cls("MERGE")

    @classmethod
    def skip_merge(cls) -> FlowEvent:
        return cls("SKIP_MERGE")


@dataclass(slots=True)
class FlowMetadata:
    description: str
    mode: WorkflowMode
    tier: str | None = None
    worktree_path: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"description": self.description, "mode": self.mode.value}
        optional = {
            "tier": self.tier,
            "worktreePath": self.worktree_path,
            "prUrl": self.pr_url,
            "prNumber": self.pr_number,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FlowMetadata:
        return cls(
            description=str(payload.get("description", "")),
            mode=WorkflowMode(payload.get("mode", WorkflowMode.GREENFIELD.value)),
            tier=payload.get("tier"),
            worktree_path=payload.get("worktreePath"),
            pr_url=payload.get("prUrl"),
            pr_number=payload.get("prNumber"),
        )


@dataclass(slots=True)
class FlowState:
    feature: str
    phase: FlowPhase
    metadata: FlowMetadata
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    history: list[FlowPhase] = field(default_factory=list)

    @property
    def mode(self) -> WorkflowMode:
        return self.metadata.mode

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature": self.feature,
            "phase": self.phase.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "history": [phase.to_dict() for phase in self.history],
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FlowState:
        return cls(
            feature=str(payload["feature"]),
            phase=FlowPhase.from_dict(payload["phase"]),
            metadata=FlowMetadata.from_dict(payload.get("metadata", {})),
            created_at=str(payload.get("createdAt") or utcnow_iso()),
            updated_at=str(payload.get("updatedAt") or utcnow_iso()),
            history=[FlowPhase.from_dict(item) for item in payload.get("history", [])],
        )
