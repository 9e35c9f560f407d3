import asyncio
from pathlib import Path

import pytest

from specflow.agents.base import AgentInvoker, AgentRequest, AgentResult
from specflow.agents.phase_executor import PhaseExecutor
from specflow.engine import WorkflowEngine
from specflow.errors import FlowNotFoundError, FlowStateError, InvalidTransitionError
from specflow.flow.task_runner import TaskRunner
from specflow.flow.types import FlowState
from specflow.plugins import ExtensionSet, HookContext, HookRegistration, HookResult
from specflow.state.commits import CommitResult, CommitService
from specflow.state.store import FlowStateStore

TASKS_MD = """# Tasks

- [ ] 1.1 Add coupon model
- [ ] 1.2 Apply coupon at checkout
"""


class FakeAgent(AgentInvoker):
    def __init__(self) -> None:
        self.prompts: list[str] = []
        self.failing: set[str] = set()

    async def invoke(self, request: AgentRequest) -> AgentResult:
        self.prompts.append(request.prompt)
        command = request.prompt.split()[0]
        if command in self.failing:
            return AgentResult(success=False, error=f"{command} crashed", retriable=False)
        return AgentResult(success=True, output="ok")


class RecordingCommits:
    def __init__(self) -> None:
        self.messages: list[str] = []

    def stage_and_commit(self, working_dir: Path, message: str) -> CommitResult:
        _ = working_dir
        self.messages.append(message)
        return CommitResult(True, commit_hash="deadbee")

    def format_task_commit_message(self, feature: str, task_index: int, task_title: str) -> str:
        return CommitService.format_task_commit_message(feature, task_index, task_title)


async def _no_sleep(delay: float) -> None:
    _ = delay


def _engine(
    repo: Path,
    agent: FakeAgent,
    *,
    extensions: ExtensionSet | None = None,
    checkpoint=None,
    interval: int = 0,
) -> WorkflowEngine:
    return WorkflowEngine(
        repo,
        store=FlowStateStore(repo),
        phase_executor=PhaseExecutor(agent, max_attempts=1, sleep=_no_sleep),
        task_runner=TaskRunner(
            agent, RecordingCommits(), checkpoint_interval=interval, sleep=_no_sleep
        ),
        hooks=extensions.hooks if extensions else None,
        checkpoint=checkpoint,
    )


def _write_tasks(engine: WorkflowEngine, feature: str) -> None:
    spec_dir = engine.spec_dir(feature)
    spec_dir.mkdir(parents=True, exist_ok=True)
    (spec_dir / "tasks.md").write_text(TASKS_MD, encoding="utf-8")


def test_greenfield_flow_end_to_end(tmp_path: Path) -> None:
    agent = FakeAgent()
    engine = _engine(tmp_path, agent)
    seen: list[str] = []
    engine.subscribe(lambda state: seen.append(state.phase.type))

    outcome = asyncio.run(engine.start("Checkout Coupon", "Apply coupons at checkout"))
    assert outcome.state.feature == "checkout-coupon"
    assert outcome.state.phase.type == "requirements-approval"

    assert asyncio.run(engine.approve("checkout-coupon")).state.phase.type == "design-approval"
    assert asyncio.run(engine.approve("checkout-coupon")).state.phase.type == "tasks-approval"
    _write_tasks(engine, "checkout-coupon")
    outcome = asyncio.run(engine.approve("checkout-coupon"))
    assert outcome.state.phase.type == "pr"

    engine.record_pull_request("checkout-coupon", "https://example.test/pr/12", 12)
    done = engine.merge("checkout-coupon")

    assert done.phase.type == "complete"
    assert agent.prompts == [
        '/specflow:spec-init "checkout-coupon" "Apply coupons at checkout"',
        "/specflow:spec-requirements checkout-coupon",
        "/specflow:spec-design checkout-coupon",
        "/specflow:spec-tasks checkout-coupon",
        "/specflow:spec-impl checkout-coupon 1.1",
        "/specflow:spec-impl checkout-coupon 1.2",
    ]
    stored = engine.status("checkout-coupon")
    assert stored is not None
    assert stored.metadata.pr_url == "https://example.test/pr/12"
    assert stored.metadata.pr_number == 12
    assert [phase.type for phase in stored.history if phase.type != "implementing"] == [
        "initializing",
        "requirements-generating",
        "requirements-approval",
        "design-generating",
        "design-approval",
        "tasks-generating",
        "tasks-approval",
        "validation",
        "pr",
        "merge-decision",
        "complete",
    ]
    assert seen[0] == "initializing"
    assert seen[-1] == "complete"
    assert engine.recovery_suggestions(stored) == []


def test_brownfield_runs_gap_analysis_and_design_validation(tmp_path: Path) -> None:
    agent = FakeAgent()
    engine = _engine(tmp_path, agent)

    asyncio.run(engine.start("billing", "Refactor billing", "brownfield"))
    assert asyncio.run(engine.approve("billing")).state.phase.type == "gap-review"
    assert asyncio.run(engine.approve("billing")).state.phase.type == "design-approval"
    outcome = asyncio.run(engine.approve("billing"))

    assert outcome.state.phase.type == "design-validation-review"
    assert "/specflow:validate-gap billing" in agent.prompts
    assert "/specflow:validate-design billing" in agent.prompts


def test_reject_regenerates_the_artifact(tmp_path: Path) -> None:
    agent = FakeAgent()
    engine = _engine(tmp_path, agent)
    asyncio.run(engine.start("cart", "Cart"))

    outcome = asyncio.run(engine.reject("cart"))

    assert outcome.state.phase.type == "requirements-approval"
    assert agent.prompts.count("/specflow:spec-requirements cart") == 2


def test_pre_hook_veto_holds_the_phase_until_resumed(tmp_path: Path) -> None:
    agent = FakeAgent()
    extensions = ExtensionSet.create()
    contexts: list[HookContext] = []

    def freeze_design(context: HookContext) -> HookResult:
        contexts.append(context)
        return HookResult.veto("Design freeze until Monday")

    extensions.hooks.register_hook("policy", HookRegistration("design", "pre", freeze_design))
    engine = _engine(tmp_path, agent, extensions=extensions)
    asyncio.run(engine.start("cart", "Cart", tier="max"))

    outcome = asyncio.run(engine.approve("cart"))

    assert outcome.vetoed is True
    assert outcome.veto_plugin == "policy"
    assert outcome.veto_reason == "Design freeze until Monday"
    assert outcome.state.phase.type == "design-generating"
    assert "/specflow:spec-design cart" not in agent.prompts
    assert contexts[0].feature == "cart"
    assert contexts[0].spec_metadata["tier"] == "max"
    assert contexts[0].flow_state["phase"]["type"] == "design-generating"

    extensions.registry.unregister_plugin("policy")
    assert asyncio.run(engine.resume("cart")).state.phase.type == "design-approval"


def test_post_hooks_run_after_successful_phase(tmp_path: Path) -> None:
    agent = FakeAgent()
    extensions = ExtensionSet.create()
    calls: list[tuple[str, str]] = []
    for timing in ("pre", "post"):
        extensions.hooks.register_hook(
            "audit",
            HookRegistration(
                "requirements",
                timing,
                lambda context: calls.append((context.phase, context.timing)),
            ),
        )
    engine = _engine(tmp_path, agent, extensions=extensions)

    asyncio.run(engine.start("cart", "Cart"))

    assert calls == [("requirements", "pre"), ("requirements", "post")]


def test_failure_then_retry(tmp_path: Path) -> None:
    agent = FakeAgent()
    agent.failing.add("/specflow:spec-requirements")
    engine = _engine(tmp_path, agent)

    outcome = asyncio.run(engine.start("cart", "Cart"))
    assert outcome.state.phase.type == "error"
    assert "crashed" in (outcome.state.phase.error or "")
    actions = [item.action for item in engine.recovery_suggestions(outcome.state)]
    assert actions == ["retry", "archive"]

    agent.failing.clear()
    retried = asyncio.run(engine.retry("cart"))
    assert retried.state.phase.type == "requirements-approval"

    with pytest.raises(FlowStateError):
        asyncio.run(engine.retry("cart"))


def test_missing_tasks_file_is_an_error(tmp_path: Path) -> None:
    engine = _engine(tmp_path, FakeAgent())
    asyncio.run(engine.start("cart", "Cart"))
    asyncio.run(engine.approve("cart"))
    asyncio.run(engine.approve("cart"))

    outcome = asyncio.run(engine.approve("cart"))

    assert outcome.state.phase.type == "error"
    assert (outcome.state.phase.error or "").startswith("No tasks found in")


def test_checkpoint_pause_and_resume(tmp_path: Path) -> None:
    agent = FakeAgent()
    engine = _engine(tmp_path, agent, checkpoint=lambda done, total: "pause", interval=1)
    asyncio.run(engine.start("cart", "Cart"))
    asyncio.run(engine.approve("cart"))
    asyncio.run(engine.approve("cart"))
    _write_tasks(engine, "cart")

    paused = asyncio.run(engine.approve("cart"))
    assert paused.state.phase.type == "paused"
    assert paused.state.phase.paused_at == 1
    assert [item.action for item in engine.recovery_suggestions(paused.state)] == [
        "resume",
        "abort",
    ]

    resumed = asyncio.run(engine.resume("cart"))
    assert resumed.state.phase.type == "pr"
    impl_prompts = [prompt for prompt in agent.prompts if "spec-impl" in prompt]
    assert impl_prompts == ["/specflow:spec-impl cart 1.1", "/specflow:spec-impl cart 1.2"]


def test_start_twice_requires_archive(tmp_path: Path) -> None:
    engine = _engine(tmp_path, FakeAgent())
    asyncio.run(engine.start("cart", "Cart"))

    with pytest.raises(FlowStateError):
        asyncio.run(engine.start("Cart", "Again"))
    with pytest.raises(FlowStateError):
        engine.archive("cart")

    aborted = engine.abort("cart", "Scope moved to next quarter")
    assert aborted.phase.reason == "Scope moved to next quarter"
    assert [item.action for item in engine.recovery_suggestions(aborted)] == ["archive"]

    target = engine.archive("cart")
    assert target.exists()
    assert engine.status("cart") is None
    asyncio.run(engine.start("cart", "Again"))
    assert engine.status("cart").metadata.description == "Again"


def test_illegal_operations_raise_without_changing_state(tmp_path: Path) -> None:
    engine = _engine(tmp_path, FakeAgent())
    asyncio.run(engine.start("cart", "Cart"))

    with pytest.raises(InvalidTransitionError):
        engine.merge("cart")
    assert engine.status("cart").phase.type == "requirements-approval"

    with pytest.raises(FlowNotFoundError):
        asyncio.run(engine.approve("ghost"))


def test_describe_includes_spec_dir_and_suggestions(tmp_path: Path) -> None:
    engine = _engine(tmp_path, FakeAgent())
    asyncio.run(engine.start("cart", "Cart"))
    state = engine.status("cart")
    assert isinstance(state, FlowState)

    payload = engine.describe(state)

    assert payload["feature"] == "cart"
    assert payload["phase"]["type"] == "requirements-approval"
    assert payload["specDir"].endswith(".specflow/specs/cart")
    assert payload["suggestions"] == []
    assert [flow.feature for flow in engine.list_flows()] == ["cart"]


def test_commit_errors_move_the_flow_to_error(tmp_path: Path) -> None:
    class BrokenCommits(RecordingCommits):
        def stage_and_commit(self, working_dir: Path, message: str) -> CommitResult:
            raise FileNotFoundError(2, "No such file or directory", str(working_dir))

    agent = FakeAgent()
    engine = WorkflowEngine(
        tmp_path,
        store=FlowStateStore(tmp_path),
        phase_executor=PhaseExecutor(agent, max_attempts=1, sleep=_no_sleep),
        task_runner=TaskRunner(agent, BrokenCommits(), checkpoint_interval=0, sleep=_no_sleep),
    )
    asyncio.run(engine.start("cart", "Cart", worktree_path=str(tmp_path / "gone")))
    asyncio.run(engine.approve("cart"))
    asyncio.run(engine.approve("cart"))
    _write_tasks(engine, "cart")

    outcome = asyncio.run(engine.approve("cart"))

    assert outcome.state.phase.type == "error"
    assert "Commit failed: [Errno 2]" in (outcome.state.phase.error or "")
    stored = engine.status("cart")
    assert stored.phase.type == "error"
    assert [phase.type for phase in stored.history[-2:]] == ["implementing", "error"]


def test_unknown_checkpoint_decision_moves_the_flow_to_error(tmp_path: Path) -> None:
    engine = _engine(tmp_path, FakeAgent(), checkpoint=lambda done, total: "later", interval=1)
    asyncio.run(engine.start("cart", "Cart"))
    asyncio.run(engine.approve("cart"))
    asyncio.run(engine.approve("cart"))
    _write_tasks(engine, "cart")

    outcome = asyncio.run(engine.approve("cart"))

    assert outcome.state.phase.type == "error"
    assert outcome.state.phase.error == "Unknown checkpoint decision: 'later'"
    assert engine.status("cart").phase.type == "error"


def test_resume_after_pause_at_four_starts_with_task_five(tmp_path: Path) -> None:
    agent = FakeAgent()
    engine = _engine(tmp_path, agent, checkpoint=lambda done, total: "pause", interval=4)
    asyncio.run(engine.start("cart", "Cart"))
    asyncio.run(engine.approve("cart"))
    asyncio.run(engine.approve("cart"))
    spec_dir = engine.spec_dir("cart")
    spec_dir.mkdir(parents=True, exist_ok=True)
    lines = [f"- [ ] 1.{number} Step {number}" for number in range(1, 7)]
    (spec_dir / "tasks.md").write_text("\n".join(lines) + "\n", encoding="utf-8")

    paused = asyncio.run(engine.approve("cart"))
    assert paused.state.phase.type == "paused"
    assert paused.state.phase.paused_at == 4

    before = len(agent.prompts)
    resumed = asyncio.run(engine.resume("cart"))

    assert resumed.state.phase.type == "pr"
    assert agent.prompts[before:] == [
        "/specflow:spec-impl cart 1.5",
        "/specflow:spec-impl cart 1.6",
    ]
