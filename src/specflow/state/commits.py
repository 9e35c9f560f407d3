from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

COMMIT_HASH_PATTERN = re.compile(r"\[[\w/.-]+(?: \([^)]*\))?\s+([a-f0-9]+)\]")


@dataclass(slots=True)
class CommitResult:
    success: bool
    commit_hash: str | None = None
    error: str | None = None


def _nothing_to_commit(output: str) -> bool:
    return "nothing to commit" in output or "working tree clean" in output


class CommitService:
    """Stages and commits task output with plain git."""

    def _run_git(self, args: list[str], working_dir: Path) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            ["git", "--no-pager", *args],
            cwd=working_dir,
            text=True,
            capture_output=True,
        )

    def stage_all(self, working_dir: Path) -> CommitResult:
        proc = self._run_git(["add", "-A"], working_dir)
        if proc.returncode != 0:
            return CommitResult(False, error=proc.stderr.strip() or "Failed to stage changes")
        return CommitResult(True)

    def commit(self, working_dir: Path, message: str) -> CommitResult:
        proc = self._run_git(["commit", "-m", message], working_dir)
        if proc.returncode != 0:
            if _nothing_to_commit(proc.stdout + proc.stderr):
                logger.debug("Nothing to commit for %r", message)
                return CommitResult(True)
            return CommitResult(False, error=proc.stderr.strip() or "Failed to commit changes")
        match = COMMIT_HASH_PATTERN.search(proc.stdout)
        return CommitResult(True, commit_hash=match.group(1) if match else None)

    def stage_and_commit(self, working_dir: Path, message: str) -> CommitResult:
        staged = self.stage_all(working_dir)
        if not staged.success:
            return staged
        return self.commit(working_dir, message)

    @staticmethod
    def format_task_commit_message(feature: str, task_index: int, task_title: str) -> str:
        return f"{task_title}\n\nTask {task_index} of {feature}"
