from taskloop.state.lifecycle import TaskBoundary, TaskLifecycle
from taskloop.state.store import (
    FileStore,
    KeyValueStore,
    MemoryStore,
    ReadResult,
    StateStoreError,
    TaskState,
    TaskStateStore,
)
from taskloop.state.vcs import CommitAuthor, GitRepository, GitResult

__all__ = [
    "CommitAuthor",
    "FileStore",
    "GitRepository",
    "GitResult",
    "KeyValueStore",
    "MemoryStore",
    "ReadResult",
    "StateStoreError",
    "TaskBoundary",
    "TaskLifecycle",
    "TaskState",
    "TaskStateStore",
]
