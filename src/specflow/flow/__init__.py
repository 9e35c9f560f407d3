from specflow.flow.machine import (
    BROWNFIELD_SEQUENCE,
    GREENFIELD_SEQUENCE,
    FlowMachine,
    is_legal,
    phase_sequence,
    transition,
)
from specflow.flow.observers import ListenerSet, Subscription
from specflow.flow.tasks import Task, TaskParser, parse_tasks
from specflow.flow.types import (
    FlowEvent,
    FlowMetadata,
    FlowPhase,
    FlowState,
    WorkflowMode,
)

__all__ = [
    "BROWNFIELD_SEQUENCE",
    "GREENFIELD_SEQUENCE",
    "FlowEvent",
    "FlowMachine",
    "FlowMetadata",
    "FlowPhase",
    "FlowState",
    "ListenerSet",
    "Subscription",
    "Task",
    "TaskParser",
    "WorkflowMode",
    "is_legal",
    "parse_tasks",
    "phase_sequence",
    "transition",
]
