import asyncio
from typing import Any

from taskloop.backends.base import ChatMessage, GatewayError, ModelGateway
from taskloop.backends.resilient import ResilientGateway, RetryPolicy
from taskloop.tasks import (
    ParseContext,
    Requirement,
    StructuredTask,
    TaskScope,
    create_fallback_task,
    format_structured_task,
    parse_task,
)
from taskloop.tasks.parser import PARSE_SYSTEM_PROMPT, build_parse_prompt, build_structured_task


class FakeClassifier(ModelGateway):
    name = "fake-classifier"

    def __init__(self, reply: str | Exception) -> None:
        self.reply = reply
        self.calls: list[tuple[list[dict[str, Any]], Any]] = []

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ChatMessage:
        _ = cancel
        self.calls.append((messages, tools))
        if isinstance(self.reply, Exception):
            raise self.reply
        return ChatMessage(content=self.reply)


def test_fallback_classification_by_keywords() -> None:
    fresh = create_fallback_task("Build me a portfolio site", ParseContext(), 1)
    assert fresh.type == "fresh"
    assert fresh.requirements == [Requirement("ADD", "Build me a portfolio site")]
    assert fresh.scope.empty

    mutation = create_fallback_task("Make the header blue", ParseContext(plan_exists=True), 2)
    assert mutation.type == "mutation"
    assert mutation.requirements[0].marker == "MODIFY"

    bugfix = create_fallback_task("The button is broken", ParseContext(plan_exists=True), 3)
    assert bugfix.type == "bugfix"
    assert bugfix.requirements[0].marker == "FIX"


def test_fallback_title_is_truncated_with_ellipsis() -> None:
    message = "a" * 120

    task = create_fallback_task(message, ParseContext(), 1)

    assert task.title == "a" * 80 + "..."
    assert task.raw_message == message


def test_bugfix_keywords_need_word_boundaries() -> None:
    task = create_fallback_task("Add a prefix field", ParseContext(), 1)

    assert task.type == "fresh"


def test_parse_prompt_includes_context_with_caps() -> None:
    context = ParseContext(
        plan_exists=True,
        last_summary="s" * 500,
        file_list=[f"file{index}.py" for index in range(30)],
    )

    prompt = build_parse_prompt("Add dark mode", context)

    assert prompt.splitlines()[0] == "User message: Add dark mode"
    assert "Plan exists: true" in prompt
    assert "Last task summary: " + "s" * 200 + "\n" in prompt
    assert "file19.py" in prompt
    assert "file20.py" not in prompt


def test_parse_prompt_omits_empty_context() -> None:
    prompt = build_parse_prompt("Build a blog", ParseContext())

    assert prompt == "User message: Build a blog\nPlan exists: false"


def test_parse_task_accepts_fenced_json() -> None:
    reply = """```json
{
  "type": "mutation",
  "title": "Add dark mode toggle",
  "requirements": [
    {"marker": "ADD", "description": "Dark mode toggle in header"},
    {"marker": "MODIFY", "description": "Theme colors"}
  ],
  "scope": {"preserve": ["Layout"], "affectedFiles": ["src/App.tsx"]}
}
```"""
    gateway = FakeClassifier(reply)

    task = asyncio.run(parse_task(gateway, "Add dark mode", ParseContext(plan_exists=True), 4))

    assert task.type == "mutation"
    assert task.title == "Add dark mode toggle"
    assert task.task_number == 4
    assert [item.marker for item in task.requirements] == ["ADD", "MODIFY"]
    assert task.scope.preserve == ["Layout"]
    assert task.scope.affected_files == ["src/App.tsx"]

    messages, tools = gateway.calls[0]
    assert tools is None
    assert messages[0] == {"role": "system", "content": PARSE_SYSTEM_PROMPT}
    assert messages[1]["content"].startswith("User message: Add dark mode")


def test_parse_task_falls_back_on_invalid_json() -> None:
    gateway = FakeClassifier("Sure! Here is the task you asked for.")

    task = asyncio.run(parse_task(gateway, "Fix the crash on load", ParseContext(), 1))

    assert task.type == "bugfix"
    assert task.title == "Fix the crash on load"
    assert task.requirements == [Requirement("FIX", "Fix the crash on load")]


def test_parse_task_falls_back_on_gateway_error() -> None:
    gateway = FakeClassifier(GatewayError("rate limited", provider="fake"))

    task = asyncio.run(parse_task(gateway, "Create a landing page", ParseContext(), 1))

    assert task.type == "fresh"
    assert len(gateway.calls) == 1


def test_parse_task_falls_back_on_network_error() -> None:
    gateway = FakeClassifier(ConnectionError("connection reset by peer"))

    task = asyncio.run(parse_task(gateway, "fix the crash", ParseContext(), 1))

    assert task.type == "bugfix"
    assert task.requirements == [Requirement("FIX", "fix the crash")]


def test_parse_task_falls_back_when_resilient_gateway_gives_up() -> None:
    inner = FakeClassifier(OSError("network unreachable"))
    gateway = ResilientGateway(
        inner, RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0)
    )

    task = asyncio.run(parse_task(gateway, "Add a contact form", ParseContext(), 4))

    assert task.type == "fresh"
    assert task.task_number == 4
    assert len(inner.calls) == 2


def test_parse_task_falls_back_on_cancellation() -> None:
    gateway = FakeClassifier('{"type": "fresh", "title": "Unused"}')

    async def _parse() -> StructuredTask:
        cancel = asyncio.Event()
        cancel.set()
        wrapped = ResilientGateway(gateway, RetryPolicy(backoff_seconds=0.0))
        return await parse_task(wrapped, "Build a blog", ParseContext(), 1, cancel)

    task = asyncio.run(_parse())

    assert task.title == "Build a blog"
    assert gateway.calls == []


def test_parse_task_without_gateway_uses_heuristics() -> None:
    task = asyncio.run(parse_task(None, "Rename the nav links", ParseContext(plan_exists=True), 7))

    assert task.type == "mutation"
    assert task.task_number == 7


def test_invalid_fields_are_coerced() -> None:
    payload = {
        "type": "refactor",
        "title": "t" * 100,
        "requirements": [
            {"marker": "DELETE", "description": "old footer"},
            {"marker": "ADD"},
            "not a requirement",
            {"marker": "REMOVE", "description": "banner"},
        ],
        "scope": {"preserve": ["nav", 3], "affected_files": "index.html"},
    }

    task = build_structured_task(payload, "Clean up", ParseContext(plan_exists=True), 2)

    assert task.type == "mutation"
    assert task.title == "t" * 80
    assert task.requirements == [
        Requirement("MODIFY", "old footer"),
        Requirement("REMOVE", "banner"),
    ]
    assert task.scope.preserve == ["nav"]
    assert task.scope.affected_files == []


def test_empty_requirements_fall_back_to_message() -> None:
    payload = {"type": "fresh", "title": "", "requirements": []}

    task = build_structured_task(payload, "Build a todo app", ParseContext(), 1)

    assert task.title == "Build a todo app"
    assert task.requirements == [Requirement("ADD", "Build a todo app")]
    assert task.scope == TaskScope()


def test_format_structured_task() -> None:
    task = StructuredTask(
        type="mutation",
        title="Add dark mode",
        task_number=3,
        requirements=[Requirement("ADD", "Toggle in header")],
        raw_message="Add dark mode\nkeep the layout",
        scope=TaskScope(preserve=["Layout"], affected_files=["src/theme.css"]),
        previous_tag="task-2-post",
    )

    rendered = format_structured_task(task)

    assert rendered == (
        "# Task: Add dark mode\n"
        "Type: mutation\n"
        "Counter: 3\n"
        "Previous snapshot: task-2-post\n"
        "\n"
        "## Requirements\n"
        "- [ADD] Toggle in header\n"
        "\n"
        "## Scope\n"
        "- PRESERVE: Layout\n"
        "- AFFECTED: src/theme.css\n"
        "\n"
        "## Original Message\n"
        "\n"
        "> Add dark mode\n"
        "> keep the layout\n"
    )


def test_format_omits_previous_snapshot_and_empty_scope() -> None:
    task = create_fallback_task("Build a blog", ParseContext(), 1)

    rendered = format_structured_task(task)

    assert "Previous snapshot" not in rendered
    assert "## Scope" not in rendered
    assert "- [ADD] Build a blog" in rendered
