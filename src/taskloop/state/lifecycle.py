from __future__ import annotations

import logging
from dataclasses import dataclass

from taskloop.state.store import KeyValueStore, StateStoreError
from taskloop.state.vcs import CommitAuthor, GitRepository

logger = logging.getLogger(__name__)

NO_SUMMARY = "(no summary)"
HISTORY_HEADER = "# Task History\n\n"
SUMMARY_LINE_LIMIT = 100
SNAPSHOT_AUTHOR = CommitAuthor(name="taskloop snapshot", email="snapshot@taskloop.local")


@dataclass(slots=True, frozen=True)
class TaskBoundary:
    task_number: int
    pre_tag: str | None
    previous_tag: str | None


def pre_tag_name(task_number: int) -> str:
    return f"task-{task_number}-pre"


def post_tag_name(task_number: int) -> str:
    return f"task-{task_number}-post"


class TaskLifecycle:
    """Cross-task counter, history log and the git tags bounding each task."""

    def __init__(
        self,
        store: KeyValueStore,
        repository: GitRepository | None,
        *,
        author: CommitAuthor = SNAPSHOT_AUTHOR,
    ) -> None:
        self.store = store
        self.repository = repository
        self.author = author

    def read_counter(self) -> int:
        try:
            result = self.store.read("task_counter")
        except StateStoreError:
            return 0
        if not result.ok:
            return 0
        try:
            return int(result.value.strip())
        except ValueError:
            return 0

    def write_counter(self, value: int) -> None:
        try:
            self.store.write("task_counter", str(value))
        except StateStoreError as exc:
            logger.error("Writing task counter failed: %s", exc)

    def read_previous_summary(self) -> str:
        result = self.store.read("summary")
        trimmed = result.or_default("").strip()
        if not trimmed:
            return NO_SUMMARY
        first_line = trimmed.split("\n", 1)[0]
        if len(first_line) > SUMMARY_LINE_LIMIT:
            return first_line[:SUMMARY_LINE_LIMIT] + "..."
        return first_line

    def append_task_history(self, task_number: int, summary_line: str) -> None:
        existing = self.store.read("task_history").or_default("")
        entry = f"- **Task {task_number}**: {summary_line}\n"
        try:
            if not existing:
                self.store.write("task_history", HISTORY_HEADER + entry)
            else:
                self.store.append("task_history", entry)
        except StateStoreError as exc:
            logger.warning("Appending task history failed: %s", exc)

    def read_task_history(self) -> str:
        return self.store.read("task_history").or_default("")

    def _create_snapshot(self, tag_name: str, commit_message: str) -> str | None:
        if self.repository is None:
            logger.info("Snapshot %s skipped: no repository configured", tag_name)
            return None
        try:
            staged = self.repository.add_all()
            if not staged.ok:
                logger.error("Snapshot %s failed to stage changes: %s", tag_name, staged.detail)
                return None
            committed = self.repository.commit(commit_message, self.author)
            if committed.kind == "failed":
                logger.error("Snapshot %s failed to commit: %s", tag_name, committed.detail)
                return None
            tagged = self.repository.tag(tag_name)
            if not tagged.ok:
                logger.error("Snapshot %s failed to tag: %s", tag_name, tagged.detail)
                return None
            return tag_name
        except (OSError, RuntimeError) as exc:
            logger.error("Snapshot failed (%s): %s", tag_name, exc)
            return None

    def create_pre_snapshot(self, task_number: int) -> str | None:
        return self._create_snapshot(
            pre_tag_name(task_number), f"snapshot: pre-task {task_number}"
        )

    def create_post_snapshot(self, task_number: int) -> str | None:
        return self._create_snapshot(
            post_tag_name(task_number), f"snapshot: post-task {task_number}"
        )

    def _existing_tag(self, name: str) -> str | None:
        if self.repository is None:
            return None
        try:
            tags = self.repository.list_tags(name)
        except OSError:
            return None
        return name if name in tags else None

    def begin_task(self) -> TaskBoundary:
        """Close out the previous task and claim the next task number."""
        counter = self.read_counter()
        task_number = counter + 1
        pre_tag: str | None = None
        previous_tag: str | None = None
        if counter > 0:
            summary_line = self.read_previous_summary()
            self.append_task_history(counter, summary_line)
            previous_tag = self._existing_tag(post_tag_name(counter))
            pre_tag = self.create_pre_snapshot(task_number)
        self.write_counter(task_number)
        return TaskBoundary(task_number=task_number, pre_tag=pre_tag, previous_tag=previous_tag)

    def complete_task(self, task_number: int) -> str | None:
        return self.create_post_snapshot(task_number)
