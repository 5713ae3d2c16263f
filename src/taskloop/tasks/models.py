from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

TaskType = Literal["fresh", "mutation", "bugfix"]
ScopeMarker = Literal["ADD", "MODIFY", "FIX", "REMOVE"]

TASK_TYPES: tuple[str, ...] = ("fresh", "mutation", "bugfix")
SCOPE_MARKERS: tuple[str, ...] = ("ADD", "MODIFY", "FIX", "REMOVE")
TITLE_LIMIT = 80


@dataclass(slots=True, frozen=True)
class Requirement:
    marker: ScopeMarker
    description: str


@dataclass(slots=True)
class TaskScope:
    preserve: list[str] = field(default_factory=list)
    affected_files: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.preserve and not self.affected_files


@dataclass(slots=True)
class StructuredTask:
    type: TaskType
    title: str
    task_number: int
    requirements: list[Requirement]
    raw_message: str
    scope: TaskScope = field(default_factory=TaskScope)
    previous_tag: str | None = None


def format_structured_task(task: StructuredTask) -> str:
    """Render the task record the loop treats as read-only ground truth."""
    lines = [
        f"# Task: {task.title}",
        f"Type: {task.type}",
        f"Counter: {task.task_number}",
    ]
    if task.previous_tag:
        lines.append(f"Previous snapshot: {task.previous_tag}")
    lines.append("")

    if task.requirements:
        lines.append("## Requirements")
        lines.extend(f"- [{item.marker}] {item.description}" for item in task.requirements)
        lines.append("")

    if not task.scope.empty:
        lines.append("## Scope")
        lines.extend(f"- PRESERVE: {item}" for item in task.scope.preserve)
        lines.extend(f"- AFFECTED: {item}" for item in task.scope.affected_files)
        lines.append("")

    lines.append("## Original Message")
    lines.append("")
    lines.append("> " + task.raw_message.replace("\n", "\n> "))
    lines.append("")
    return "\n".join(lines)
