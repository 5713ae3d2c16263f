import asyncio
import json
import subprocess
from pathlib import Path
from typing import Any

from taskloop.backends.base import ChatMessage, ModelGateway, ToolCall
from taskloop.config import TaskloopConfig
from taskloop.runner import TaskRunner
from taskloop.state import FileStore, GitRepository, TaskStateStore
from taskloop.tools import SubprocessExecutor


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "README.md").write_text("# demo\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class FakeGateway(ModelGateway):
    """Answers classifier calls with JSON and loop calls from a script."""

    name = "fake"

    def __init__(self, classification: dict[str, Any], loop_replies: list[ChatMessage]) -> None:
        self.classification = classification
        self.loop_replies = list(loop_replies)
        self.classifier_prompts: list[str] = []
        self.loop_prompts: list[str] = []

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ChatMessage:
        _ = cancel
        if tools is None:
            self.classifier_prompts.append(messages[-1]["content"])
            return ChatMessage(content=json.dumps(self.classification))
        self.loop_prompts.append(messages[1]["content"])
        if self.loop_replies:
            return self.loop_replies.pop(0)
        return ChatMessage(content="still thinking", finish_reason="length")


def _shell(*commands: str) -> ChatMessage:
    return ChatMessage(
        tool_calls=[
            ToolCall(id=f"call-{index}", name="shell", arguments=json.dumps({"command": command}))
            for index, command in enumerate(commands)
        ],
        finish_reason="tool_calls",
    )


def _build_page(intent: str, page: str, summary: str) -> ChatMessage:
    return _shell(
        f"printf '{intent}' > .taskloop/intent.md",
        f"printf '{page}' > index.html",
        f"printf '{summary}' > .taskloop/summary.md",
        "printf complete > .taskloop/status.txt",
    )


def _runner(repo: Path, gateway: FakeGateway, config: TaskloopConfig) -> TaskRunner:
    (repo / ".taskloop").mkdir(exist_ok=True)
    return TaskRunner(
        root=repo,
        store=FileStore(repo, config.project.state_dir),
        gateway=gateway,
        executor=SubprocessExecutor(timeout_seconds=30),
        config=config,
        repository=GitRepository(repo),
    )


def test_two_tasks_are_bounded_by_snapshots(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    config = TaskloopConfig.default()
    classification = {
        "type": "fresh",
        "title": "Landing page",
        "requirements": [{"marker": "ADD", "description": "Hero heading"}],
    }
    gateway = FakeGateway(
        classification,
        [
            _build_page(
                "Building a landing page",
                "<h1>Hello</h1>",
                "Built hero section with gradient background",
            ),
            _build_page(
                "Changing the heading",
                "<h1>Welcome</h1>",
                "Changed the hero heading to a welcome message",
            ),
        ],
    )
    runner = _runner(repo, gateway, config)

    first = asyncio.run(runner.handle_message("Build me a landing page"))

    assert first.task_number == 1
    assert first.boundary.pre_tag is None
    assert first.result.outcome == "success"
    assert first.result.iterations == 1
    assert first.post_tag == "task-1-post"
    assert first.task.title == "Landing page"
    assert (repo / "index.html").read_text(encoding="utf-8") == "<h1>Hello</h1>"
    assert "Plan exists: false" in gateway.classifier_prompts[0]

    second = asyncio.run(runner.handle_message("Change the heading to Welcome"))

    assert second.task_number == 2
    assert second.boundary.pre_tag == "task-2-pre"
    assert second.task.previous_tag == "task-1-post"
    assert second.post_tag == "task-2-post"
    assert "Last task summary: Built hero section" in gateway.classifier_prompts[1]
    assert "Previous snapshot: task-1-post" in gateway.loop_prompts[1]

    repository = GitRepository(repo)
    assert repository.list_tags("task-*") == ["task-1-post", "task-2-post", "task-2-pre"]
    store = FileStore(repo)
    assert store.read("task_history").value == (
        "# Task History\n\n- **Task 1**: Built hero section with gradient background\n"
    )
    assert store.read("task_counter").value == "2"
    origin = store.read("origin").value
    assert "## Task 1\n\nBuild me a landing page\n" in origin
    assert "## Task 2\n\nChange the heading to Welcome\n" in origin


def test_failed_task_gets_no_post_snapshot(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    config = TaskloopConfig.default()
    config.loop.max_iterations = 2
    config.parser.enabled = False
    gateway = FakeGateway({}, [])
    runner = _runner(repo, gateway, config)

    outcome = asyncio.run(runner.handle_message("Fix the broken footer"))

    assert outcome.result.outcome == "failure"
    assert outcome.result.iterations == 2
    assert outcome.post_tag is None
    assert outcome.task.type == "bugfix"
    assert gateway.classifier_prompts == []
    assert GitRepository(repo).list_tags("task-*") == []
    assert TaskStateStore(FileStore(repo)).read_iteration() == 2
