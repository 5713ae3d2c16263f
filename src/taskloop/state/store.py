from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

ReadKind = Literal["ok", "missing", "error"]
TaskStatus = Literal["running", "waiting", "complete"]

STATUS_VALUES: frozenset[str] = frozenset({"running", "waiting", "complete"})

FIELD_FILES: dict[str, str] = {
    "task": "task.md",
    "origin": "origin.md",
    "intent": "intent.md",
    "plan": "plan.md",
    "summary": "summary.md",
    "feedback": "feedback.md",
    "iteration": "iteration.txt",
    "status": "status.txt",
    "task_counter": "task-counter.txt",
    "task_history": "task-history.md",
    "gaps": "gaps.jsonl",
    "reflections": "reflections.jsonl",
}


class StateStoreError(RuntimeError):
    """Raised when a state field cannot be written or is unknown."""


@dataclass(slots=True, frozen=True)
class ReadResult:
    kind: ReadKind
    value: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind == "ok"

    def or_default(self, default: str) -> str:
        return self.value if self.kind == "ok" else default


def _validate_key(key: str) -> None:
    if key not in FIELD_FILES:
        raise StateStoreError(f"Unsupported state field: {key}")


class KeyValueStore(ABC):
    """Named text fields that survive between otherwise stateless model calls."""

    @abstractmethod
    def read(self, key: str) -> ReadResult:
        """Return the raw field content, or a missing/error result."""

    @abstractmethod
    def write(self, key: str, value: str) -> None:
        """Replace the field content."""

    @abstractmethod
    def append(self, key: str, value: str) -> None:
        """Append to the field, creating it when absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the field. Removing an absent field is not an error."""


class FileStore(KeyValueStore):
    def __init__(self, root: Path, state_dir: str = ".taskloop") -> None:
        self.root = root.resolve()
        self.state_dir = self.root / state_dir

    def path_for(self, key: str) -> Path:
        _validate_key(key)
        return self.state_dir / FIELD_FILES[key]

    def read(self, key: str) -> ReadResult:
        path = self.path_for(key)
        try:
            return ReadResult("ok", path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return ReadResult("missing")
        except (OSError, UnicodeDecodeError) as exc:
            return ReadResult("error", error=str(exc))

    def write(self, key: str, value: str) -> None:
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(value, encoding="utf-8")
        except OSError as exc:
            raise StateStoreError(f"Failed to write {key}: {exc}") from exc

    def append(self, key: str, value: str) -> None:
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(value)
        except OSError as exc:
            raise StateStoreError(f"Failed to append {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink()
        except FileNotFoundError:
            pass


class MemoryStore(KeyValueStore):
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.fields: dict[str, str] = {}
        self.writes: list[tuple[str, str]] = []
        for key, value in (initial or {}).items():
            _validate_key(key)
            self.fields[key] = value

    def read(self, key: str) -> ReadResult:
        _validate_key(key)
        if key not in self.fields:
            return ReadResult("missing")
        return ReadResult("ok", self.fields[key])

    def write(self, key: str, value: str) -> None:
        _validate_key(key)
        self.fields[key] = value
        self.writes.append((key, value))

    def append(self, key: str, value: str) -> None:
        _validate_key(key)
        self.fields[key] = self.fields.get(key, "") + value
        self.writes.append((key, value))

    def delete(self, key: str) -> None:
        _validate_key(key)
        self.fields.pop(key, None)


@dataclass(slots=True)
class TaskState:
    task: str = ""
    origin: str = ""
    intent: str = ""
    plan: str = ""
    summary: str = ""
    feedback: str = ""
    iteration: int = 0
    status: str = "running"


class TaskStateStore:
    """Typed view over the per-task fields of a key-value store.

    Every accessor reads through to the backing store. Nothing is cached, so a
    snapshot taken at the start of an iteration reflects every write made by
    the previous one.
    """

    EPHEMERAL_FIELDS = ("intent", "summary", "feedback")

    def __init__(self, backend: KeyValueStore) -> None:
        self.backend = backend

    def _read_text(self, key: str, default: str = "") -> str:
        result = self.backend.read(key)
        if result.kind == "error":
            logger.warning("Reading state field %s failed: %s", key, result.error)
        return result.or_default(default).strip()

    def read_field(self, key: str) -> str:
        return self._read_text(key)

    def read_iteration(self) -> int:
        raw = self._read_text("iteration", "0")
        try:
            return int(raw)
        except ValueError:
            return 0

    def read_status(self) -> str:
        return self._read_text("status", "running") or "running"

    def snapshot(self) -> TaskState:
        return TaskState(
            task=self._read_text("task"),
            origin=self._read_text("origin"),
            intent=self._read_text("intent"),
            plan=self._read_text("plan"),
            summary=self._read_text("summary"),
            feedback=self._read_text("feedback"),
            iteration=self.read_iteration(),
            status=self.read_status(),
        )

    def begin_task(self, task_text: str, origin_text: str | None = None) -> None:
        self.backend.write("task", task_text if task_text.endswith("\n") else task_text + "\n")
        for key in self.EPHEMERAL_FIELDS:
            self.backend.write(key, "")
        self.backend.write("iteration", "0")
        self.backend.write("status", "running")
        if origin_text:
            existing = self.backend.read("origin").or_default("")
            separator = "\n" if existing and not existing.endswith("\n") else ""
            self.backend.append("origin", f"{separator}{origin_text.rstrip()}\n")

    def set_iteration(self, iteration: int) -> None:
        current = self.read_iteration()
        if iteration < current:
            raise StateStoreError(
                f"Iteration may not decrease within a task ({current} -> {iteration})."
            )
        self.backend.write("iteration", str(iteration))

    def set_status(self, status: str) -> None:
        if status not in STATUS_VALUES:
            raise StateStoreError(f"Unsupported status: {status}")
        self.backend.write("status", status)

    def write_field(self, key: str, value: str) -> None:
        self.backend.write(key, value)

    def write_feedback(self, feedback: str) -> None:
        self.backend.write("feedback", feedback)

    def is_complete(self) -> bool:
        return self._read_text("status") == "complete"

    def is_waiting(self) -> bool:
        return self._read_text("status") == "waiting"

    def has_plan(self) -> bool:
        return bool(self._read_text("plan"))
