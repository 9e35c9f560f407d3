import pytest

from specflow.errors import InvalidTransitionError, ModeLockedError
from specflow.flow import (
    BROWNFIELD_SEQUENCE,
    GREENFIELD_SEQUENCE,
    FlowEvent,
    FlowMachine,
    FlowPhase,
    WorkflowMode,
    is_legal,
    transition,
)


def _walk(machine: FlowMachine, events: list[FlowEvent]) -> list[str]:
    visited = [machine.phase.type]
    for event in events:
        visited.append(machine.send(event).type)
    return visited


def test_greenfield_happy_path_visits_every_phase_in_order() -> None:
    machine = FlowMachine()
    visited = _walk(
        machine,
        [
            FlowEvent.start("checkout-coupon", "Apply coupons at checkout", "greenfield"),
            FlowEvent.phase_complete(),
            FlowEvent.phase_complete(),
            FlowEvent.approve(),
            FlowEvent.phase_complete(),
            FlowEvent.approve(),
            FlowEvent.phase_complete(),
            FlowEvent.approve(),
            FlowEvent.task_complete(1, 2),
            FlowEvent.task_complete(2, 2),
            FlowEvent.phase_complete(),
            FlowEvent.phase_complete(),
            FlowEvent.pr_created("https://example.test/pr/7"),
            FlowEvent.merge(),
        ],
    )

    collapsed = [phase for i, phase in enumerate(visited) if i == 0 or visited[i - 1] != phase]
    assert collapsed == ["idle", *GREENFIELD_SEQUENCE]
    assert machine.phase.feature == "checkout-coupon"


def test_brownfield_inserts_gap_and_design_validation_phases() -> None:
    machine = FlowMachine()
    machine.send(FlowEvent.start("billing", "Refactor billing", WorkflowMode.BROWNFIELD))
    machine.send(FlowEvent.phase_complete())
    machine.send(FlowEvent.phase_complete())
    assert machine.phase.type == "requirements-approval"
    assert machine.send(FlowEvent.approve()).type == "gap-analysis"
    assert machine.send(FlowEvent.phase_complete()).type == "gap-review"
    assert machine.send(FlowEvent.approve()).type == "design-generating"
    machine.send(FlowEvent.phase_complete())
    assert machine.send(FlowEvent.approve()).type == "design-validation"
    assert machine.send(FlowEvent.phase_complete()).type == "design-validation-review"
    assert machine.send(FlowEvent.approve()).type == "tasks-generating"
    assert "gap-analysis" in BROWNFIELD_SEQUENCE
    assert "gap-analysis" not in GREENFIELD_SEQUENCE


def test_greenfield_never_enters_brownfield_only_phases() -> None:
    phase = FlowPhase("requirements-approval", feature="cart")
    assert transition(phase, FlowEvent.approve(), "greenfield").type == "design-generating"

    gap = FlowPhase("gap-analysis", feature="cart")
    result = transition(gap, FlowEvent.phase_complete(), "greenfield")
    assert result.type == "error"
    assert "not allowed from gap-analysis" in (result.error or "")


@pytest.mark.parametrize(
    ("review", "target"),
    [
        ("requirements-approval", "requirements-generating"),
        ("gap-review", "gap-analysis"),
        ("design-approval", "design-generating"),
        ("design-validation-review", "design-validation"),
        ("tasks-approval", "tasks-generating"),
    ],
)
def test_reject_returns_to_the_generating_phase(review: str, target: str) -> None:
    phase = FlowPhase(review, feature="cart")  # type: ignore[arg-type]
    assert transition(phase, FlowEvent.reject(), "brownfield").type == target


def test_illegal_edge_returns_error_phase_without_side_effects() -> None:
    phase = FlowPhase("design-approval", feature="cart")
    result = transition(phase, FlowEvent.task_complete(1), "greenfield")

    assert result.type == "error"
    assert result.error == (
        "Invalid transition: TASK_COMPLETE is not allowed from design-approval (greenfield mode)"
    )
    assert phase.type == "design-approval"
    assert not is_legal(phase, FlowEvent.task_complete(1), "greenfield")


def test_abort_and_error_are_legal_from_any_non_terminal_phase() -> None:
    for phase_type in ("requirements-generating", "tasks-approval", "implementing", "pr"):
        phase = FlowPhase(phase_type, feature="cart")  # type: ignore[arg-type]
        aborted = transition(phase, FlowEvent.abort("changed my mind"), "greenfield")
        failed = transition(phase, FlowEvent.error("boom"), "greenfield")
        assert aborted.type == "aborted"
        assert aborted.reason == "changed my mind"
        assert failed.type == "error"
        assert failed.error == "boom"

    for terminal in ("complete", "aborted", "error"):
        phase = FlowPhase(terminal, feature="cart")  # type: ignore[arg-type]
        assert not is_legal(phase, FlowEvent.abort("late"), "greenfield")


def test_pause_and_resume_keep_the_task_position() -> None:
    implementing = FlowPhase("implementing", feature="cart", current_task=4, total_tasks=9)
    paused = transition(implementing, FlowEvent.pause(), "greenfield")
    assert paused.type == "paused"
    assert paused.paused_at == 4

    resumed = transition(paused, FlowEvent.resume("cart"), "greenfield")
    assert resumed.type == "implementing"
    assert resumed.current_task == 4
    assert resumed.total_tasks == 9


def test_task_complete_updates_progress() -> None:
    phase = FlowPhase("implementing", feature="cart", current_task=0, total_tasks=0)
    phase = transition(phase, FlowEvent.task_complete(1, 3), "greenfield")
    phase = transition(phase, FlowEvent.task_complete(2, 3), "greenfield")
    assert (phase.type, phase.current_task, phase.total_tasks) == ("implementing", 2, 3)


def test_pr_created_requires_url() -> None:
    phase = FlowPhase("pr", feature="cart")
    assert transition(phase, FlowEvent.pr_created(""), "greenfield").type == "error"

    merge = transition(phase, FlowEvent.pr_created("https://example.test/pr/1"), "greenfield")
    assert merge.type == "merge-decision"
    assert merge.pr_url == "https://example.test/pr/1"
    assert transition(merge, FlowEvent.skip_merge(), "greenfield").type == "complete"


def test_machine_rejects_illegal_event_without_mutation_or_persist() -> None:
    machine = FlowMachine(FlowPhase("design-approval", feature="cart"), "greenfield")
    persisted: list[FlowPhase] = []
    seen: list[FlowPhase] = []
    machine.subscribe(seen.append)

    with pytest.raises(InvalidTransitionError) as excinfo:
        machine.send(FlowEvent.pr_created("https://example.test"), persist=persisted.append)

    assert excinfo.value.phase == "design-approval"
    assert excinfo.value.event == "PR_CREATED"
    assert machine.phase.type == "design-approval"
    assert persisted == []
    assert seen == []


def test_machine_locks_mode_on_start() -> None:
    machine = FlowMachine(mode="brownfield")
    with pytest.raises(ModeLockedError):
        machine.send(FlowEvent.start("cart", "Cart", "greenfield"))

    machine.send(FlowEvent.start("cart", "Cart", "brownfield"))
    assert machine.mode is WorkflowMode.BROWNFIELD


def test_machine_persists_before_notifying_in_subscription_order() -> None:
    machine = FlowMachine()
    calls: list[str] = []

    def persist(phase: FlowPhase) -> None:
        calls.append(f"persist:{phase.type}")

    machine.subscribe(lambda phase: calls.append(f"first:{phase.type}"))
    machine.subscribe(lambda phase: calls.append(f"second:{phase.type}"))
    machine.send(FlowEvent.start("cart", "Cart", "greenfield"), persist=persist)

    assert calls == ["persist:initializing", "first:initializing", "second:initializing"]


def test_failed_persist_leaves_machine_unchanged() -> None:
    machine = FlowMachine()
    seen: list[FlowPhase] = []
    machine.subscribe(seen.append)

    def persist(phase: FlowPhase) -> None:
        raise OSError("disk full")

    with pytest.raises(OSError):
        machine.send(FlowEvent.start("cart", "Cart", "greenfield"), persist=persist)

    assert machine.phase.type == "idle"
    assert seen == []


def test_unsubscribe_is_idempotent_and_listener_errors_are_isolated() -> None:
    machine = FlowMachine()
    seen: list[str] = []

    def broken(phase: FlowPhase) -> None:
        raise RuntimeError("listener bug")

    machine.subscribe(broken)
    subscription = machine.subscribe(lambda phase: seen.append(phase.type))
    machine.send(FlowEvent.start("cart", "Cart", "greenfield"))
    subscription.unsubscribe()
    subscription.unsubscribe()
    machine.send(FlowEvent.phase_complete())

    assert seen == ["initializing"]
    assert subscription.active is False


def test_phase_serialization_migrates_legacy_names() -> None:
    phase = FlowPhase.from_dict({"type": "design-review", "feature": "cart"})
    assert phase.type == "design-approval"

    paused = FlowPhase("paused", feature="cart", paused_at=4, total_tasks=9)
    assert paused.to_dict() == {"type": "paused", "feature": "cart", "pausedAt": 4, "totalTasks": 9}
    assert FlowPhase.from_dict(paused.to_dict()) == paused
