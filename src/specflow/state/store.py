from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from specflow.errors import FlowStateError
from specflow.flow.types import FlowState, utcnow_iso

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".specflow"
STATE_FILE_NAME = "state.json"
REQUIRED_KEYS = ("feature", "phase", "createdAt", "updatedAt", "history", "metadata")


def sanitize_feature_name(feature: str) -> str:
    name = re.sub(r"\s+", "-", feature.lower())
    name = re.sub(r"[^a-z0-9\-_]", "", name)
    name = re.sub(r"-+", "-", name)
    return name.strip("-")


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON next to ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


class FlowStateStore:
    """JSON persistence for flow state under ``.specflow/flows/<feature>/``."""

    def __init__(self, repo_root: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.repo_root = repo_root.resolve()
        self.base_dir = self.repo_root / STATE_DIR_NAME
        self.flows_dir = self.base_dir / "flows"
        self.archive_dir = self.base_dir / "archive"
        self.lock_file = self.base_dir / ".flows.lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    def feature_dir(self, feature: str) -> Path:
        name = sanitize_feature_name(feature)
        if not name:
            raise FlowStateError(f"Feature name has no usable characters: {feature!r}")
        return self.flows_dir / name

    def state_path(self, feature: str) -> Path:
        return self.feature_dir(feature) / STATE_FILE_NAME

    @contextmanager
    def _state_lock(self):
        self.base_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise FlowStateError("Timed out waiting for flow state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def save(self, state: FlowState) -> None:
        state.updated_at = utcnow_iso()
        with self._state_lock():
            write_json_atomic(self.state_path(state.feature), state.to_dict())

    def load(self, feature: str) -> FlowState | None:
        path = self.state_path(feature)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable flow state at %s", path)
            return None
        if not isinstance(payload, dict) or any(key not in payload for key in REQUIRED_KEYS):
            logger.warning("Ignoring malformed flow state at %s", path)
            return None
        try:
            return FlowState.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring invalid flow state at %s: %s", path, exc)
            return None

    def exists(self, feature: str) -> bool:
        return self.state_path(feature).exists()

    def list(self) -> list[FlowState]:
        if not self.flows_dir.exists():
            return []
        states: list[FlowState] = []
        for entry in sorted(self.flows_dir.iterdir()):
            if not entry.is_dir() or not (entry / STATE_FILE_NAME).exists():
                continue
            state = self.load(entry.name)
            if state is not None:
                states.append(state)
        return states

    def archive(self, feature: str) -> Path:
        source = self.feature_dir(feature)
        if not source.exists():
            raise FlowStateError(f"No flow state to archive for feature: {feature}")
        stamp = utcnow_iso().replace(":", "").replace("+0000", "Z")
        target = self.archive_dir / f"{source.name}-{stamp}"
        with self._state_lock():
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(target))
        logger.info("Archived flow %s to %s", feature, target)
        return target
