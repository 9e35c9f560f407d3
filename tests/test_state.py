import json
import subprocess
from pathlib import Path

import pytest

from specflow.errors import FlowStateError
from specflow.flow.types import FlowMetadata, FlowPhase, FlowState, WorkflowMode
from specflow.state.commits import CommitService
from specflow.state.store import FlowStateStore, sanitize_feature_name, write_json_atomic


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _state(feature: str = "checkout-coupon") -> FlowState:
    return FlowState(
        feature=feature,
        phase=FlowPhase("design-approval", feature=feature),
        metadata=FlowMetadata(description="Coupons", mode=WorkflowMode.BROWNFIELD, tier="max"),
        history=[FlowPhase("initializing", feature=feature, description="Coupons")],
    )


def test_sanitize_feature_name() -> None:
    assert sanitize_feature_name("  Checkout Coupon!! v2 ") == "checkout-coupon-v2"
    assert sanitize_feature_name("a -- b") == "a-b"
    assert sanitize_feature_name("already_ok") == "already_ok"


def test_store_roundtrip(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path)
    state = _state()
    store.save(state)

    loaded = store.load("checkout-coupon")
    assert loaded is not None
    assert loaded.phase == state.phase
    assert loaded.metadata.mode is WorkflowMode.BROWNFIELD
    assert loaded.metadata.tier == "max"
    assert loaded.history == state.history
    assert store.exists("checkout-coupon")
    assert not (tmp_path / ".specflow" / ".flows.lock").exists()

    on_disk = json.loads(store.state_path("checkout-coupon").read_text(encoding="utf-8"))
    assert on_disk["phase"] == {"type": "design-approval", "feature": "checkout-coupon"}
    assert on_disk["metadata"]["mode"] == "brownfield"


def test_load_missing_returns_none(tmp_path: Path) -> None:
    assert FlowStateStore(tmp_path).load("nothing-here") is None


def test_load_ignores_corrupt_and_incomplete_files(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path)
    path = store.state_path("broken")
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    assert store.load("broken") is None

    path.write_text(json.dumps({"feature": "broken", "phase": {"type": "idle"}}), encoding="utf-8")
    assert store.load("broken") is None


def test_load_ignores_unknown_mode(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path)
    store.save(_state())
    path = store.state_path("checkout-coupon")
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["metadata"]["mode"] = "sideways"
    path.write_text(json.dumps(payload), encoding="utf-8")

    assert store.load("checkout-coupon") is None
    assert store.list() == []


def test_load_migrates_legacy_phase_names(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path)
    payload = _state("legacy").to_dict()
    payload["phase"] = {"type": "tasks-review", "feature": "legacy"}
    write_json_atomic(store.state_path("legacy"), payload)

    loaded = store.load("legacy")
    assert loaded is not None
    assert loaded.phase.type == "tasks-approval"


def test_list_and_archive(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path)
    store.save(_state("beta"))
    store.save(_state("alpha"))

    assert [state.feature for state in store.list()] == ["alpha", "beta"]

    target = store.archive("alpha")
    assert target.parent == store.archive_dir
    assert (target / "state.json").exists()
    assert store.load("alpha") is None
    assert [state.feature for state in store.list()] == ["beta"]

    with pytest.raises(FlowStateError):
        store.archive("alpha")


def test_feature_without_usable_characters_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(FlowStateError):
        FlowStateStore(tmp_path).state_path("!!!")


def test_lock_timeout(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path, lock_timeout_seconds=0.05)
    store.base_dir.mkdir(parents=True)
    store.lock_file.write_text("1234", encoding="utf-8")

    with pytest.raises(FlowStateError):
        store.save(_state())


def test_commit_service_commits_changes(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    (repo / "coupon.py").write_text("DISCOUNT = 10\n", encoding="utf-8")

    service = CommitService()
    message = service.format_task_commit_message("checkout-coupon", 1, "Add coupon model")
    result = service.stage_and_commit(repo, message)

    assert result.success is True
    assert result.commit_hash is not None
    head = _run(["git", "rev-parse", "HEAD"], cwd=repo).strip()
    assert head.startswith(result.commit_hash)
    subject = _run(["git", "log", "-1", "--format=%s"], cwd=repo).strip()
    assert subject == "Add coupon model"


def test_commit_service_treats_clean_tree_as_success(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)

    result = CommitService().stage_and_commit(repo, "nothing changed")
    assert result.success is True
    assert result.commit_hash is None


def test_commit_service_reports_git_failure(tmp_path: Path) -> None:
    result = CommitService().stage_and_commit(tmp_path, "outside a repository")
    assert result.success is False
    assert result.error
