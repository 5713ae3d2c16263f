from pathlib import Path

import pytest

from taskloop.state import FileStore, MemoryStore, StateStoreError, TaskStateStore


def test_file_store_roundtrip_and_missing(tmp_path: Path) -> None:
    store = FileStore(tmp_path)

    assert store.read("summary").kind == "missing"
    assert store.read("summary").or_default("fallback") == "fallback"

    store.write("summary", "Built a thing\n")
    store.append("origin", "first\n")
    store.append("origin", "second\n")

    assert store.read("summary").value == "Built a thing\n"
    assert store.read("origin").value == "first\nsecond\n"
    assert (tmp_path / ".taskloop" / "summary.md").exists()
    assert store.path_for("status") == tmp_path.resolve() / ".taskloop" / "status.txt"


def test_file_store_reports_read_errors(tmp_path: Path) -> None:
    store = FileStore(tmp_path)
    (tmp_path / ".taskloop" / "plan.md").mkdir(parents=True)

    result = store.read("plan")

    assert result.kind == "error"
    assert result.error
    assert result.or_default("") == ""


def test_file_store_rejects_unknown_fields(tmp_path: Path) -> None:
    store = FileStore(tmp_path)

    with pytest.raises(StateStoreError):
        store.write("../escape", "nope")


def test_file_store_delete_is_idempotent(tmp_path: Path) -> None:
    store = FileStore(tmp_path, state_dir="state")
    store.write("gaps", "{}\n")

    store.delete("gaps")
    store.delete("gaps")

    assert store.read("gaps").kind == "missing"
    assert store.path_for("gaps") == tmp_path.resolve() / "state" / "gaps.jsonl"


def test_snapshot_defaults_and_trims() -> None:
    state = TaskStateStore(MemoryStore({"task": "  # Task: demo \n", "iteration": "oops"}))

    snapshot = state.snapshot()

    assert snapshot.task == "# Task: demo"
    assert snapshot.intent == ""
    assert snapshot.iteration == 0
    assert snapshot.status == "running"


def test_begin_task_resets_ephemeral_fields_and_keeps_plan() -> None:
    backend = MemoryStore(
        {
            "task": "old task",
            "origin": "## Task 1\n\nfirst request\n",
            "intent": "old intent",
            "plan": "1. keep me",
            "summary": "old summary",
            "feedback": "old feedback",
            "iteration": "7",
            "status": "complete",
        }
    )
    state = TaskStateStore(backend)

    state.begin_task("# Task: new", origin_text="## Task 2\n\nsecond request")

    snapshot = state.snapshot()
    assert snapshot.task == "# Task: new"
    assert snapshot.intent == ""
    assert snapshot.summary == ""
    assert snapshot.feedback == ""
    assert snapshot.iteration == 0
    assert snapshot.status == "running"
    assert snapshot.plan == "1. keep me"
    assert backend.fields["origin"] == "## Task 1\n\nfirst request\n## Task 2\n\nsecond request\n"


def test_iteration_never_decreases_within_a_task() -> None:
    state = TaskStateStore(MemoryStore())

    state.set_iteration(1)
    state.set_iteration(2)
    state.set_iteration(2)

    with pytest.raises(StateStoreError):
        state.set_iteration(1)
    assert state.read_iteration() == 2


def test_status_values_are_validated() -> None:
    state = TaskStateStore(MemoryStore())

    state.set_status("waiting")
    assert state.is_waiting() is True
    state.set_status("complete")
    assert state.is_complete() is True

    with pytest.raises(StateStoreError):
        state.set_status("done")


def test_memory_store_records_writes() -> None:
    store = MemoryStore()

    store.write("status", "running")
    store.append("task_history", "- entry\n")

    assert store.writes == [("status", "running"), ("task_history", "- entry\n")]
    assert store.read("intent").kind == "missing"
