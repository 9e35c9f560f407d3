from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

TASK_LINE_PATTERN = re.compile(r"^-\s+\[([ xX])\](\*)?\s+(\d+\.\d+)\s+(?:\(P\)\s+)?(.+)$")
LOOSE_TASK_PATTERN = re.compile(r"^-\s+\[\s*[xX ]?\s*\]\s+\d+\.")


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    completed: bool = False
    parallel: bool = False
    optional: bool = False


def _parse_description(lines: list[str], start: int) -> str:
    description: list[str] = []
    for line in lines[start:]:
        stripped = line.strip()
        if TASK_LINE_PATTERN.match(stripped) or LOOSE_TASK_PATTERN.match(stripped):
            break
        if stripped.startswith("-") and not stripped.startswith("- ["):
            description.append(stripped[1:].strip())
    return "\n".join(description)


def parse_tasks(content: str) -> list[Task]:
    """Parse checkbox task lines such as ``- [ ] 1.1 (P) Add coupon model``.

    Indented ``- detail`` lines under a task become its description.
    """
    lines = content.splitlines()
    tasks: list[Task] = []
    for index, line in enumerate(lines):
        match = TASK_LINE_PATTERN.match(line.strip())
        if match is None:
            continue
        checkmark, asterisk, task_id, title = match.groups()
        tasks.append(
            Task(
                id=task_id,
                title=title.strip(),
                description=_parse_description(lines, index + 1),
                completed=checkmark.lower() == "x",
                parallel="(P)" in line,
                optional=asterisk == "*",
            )
        )
    return tasks


class TaskParser:
    def __init__(self, file_name: str = "tasks.md") -> None:
        self.file_name = file_name

    def parse(self, spec_dir: Path) -> list[Task]:
        tasks_path = spec_dir / self.file_name
        if not tasks_path.exists():
            return []
        return parse_tasks(tasks_path.read_text(encoding="utf-8"))

    @staticmethod
    def pending(tasks: list[Task]) -> list[Task]:
        return [task for task in tasks if not task.completed]

    @staticmethod
    def find(tasks: list[Task], task_id: str) -> Task | None:
        for task in tasks:
            if task.id == task_id:
                return task
        return None
