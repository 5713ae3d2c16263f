"""The iteration state machine driving a model through one task.

Each iteration is a cold read of the state store: the model never sees a
transcript from earlier iterations, only the current task, intent, plan and
feedback fields. Completion is decided by quality gates, never by the model.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskloop.backends.base import GatewayCancelledError, ModelGateway
from taskloop.config import TaskloopConfig
from taskloop.gaps import (
    CommandAttempt,
    GapRecord,
    is_command_not_found,
    parse_command_string,
    record_gap,
)
from taskloop.gates import (
    DEFAULT_GATES,
    ErrorCollector,
    GateContext,
    GateRunSummary,
    QualityGate,
    render_gate_feedback,
    run_quality_gates,
)
from taskloop.reflection import capture_reflection
from taskloop.state.store import KeyValueStore, TaskState, TaskStateStore
from taskloop.state.vcs import CommitAuthor, GitRepository
from taskloop.tools import TOOL_CATALOG, InvalidToolCall, ToolExecutor, parse_tool_arguments

logger = logging.getLogger(__name__)

LoopOutcome = Literal["success", "failure", "aborted", "waiting"]
LoopEventHook = Callable[[dict[str, Any]], None]

ABORTED_MESSAGE = "Aborted by user"
MAX_ITERATIONS_MESSAGE = "Max iterations reached"
WAITING_MESSAGE = "Waiting for human input"
INTERNAL_ERROR_MESSAGE = "Loop stopped after an internal error. See logs for details."

COMMAND_LINE_PATTERN = re.compile(
    r"^\s*(cat|echo|mkdir|touch|replace|sed|grep|find|cp|mv|rm)\s", re.MULTILINE
)
CODE_BLOCK_PATTERN = re.compile(r"```(?:bash|sh|shell)?\n([\s\S]*?)```")
HEREDOC_WRITE_PATTERN = re.compile(r"cat\s+>.*<<\s*['\"]?EOF", re.IGNORECASE)
HEREDOC_PATTERN = re.compile(r"cat\s*<<\s*['\"]?EOF", re.IGNORECASE)
REDIRECT_PATTERN = re.compile(r"echo\s+.*>\s*src/")

SYSTEM_PROMPT_TEMPLATE = """You are an autonomous software builder working inside a project directory.

You have exactly one interface: the shell tool. Every file you read or write and every
command you run goes through it. NEVER write commands in your text response. If you respond
with text and no tool calls, the harness treats it as a completion attempt and runs the
quality gates. If you have not done the work yet, the gates will fail.

## Your state directory ({state_dir}/)

Managed files (the harness writes these, treat them as read-only):
- {state_dir}/origin.md: the history of requests for this project
- {state_dir}/task.md: the current task, already broken into requirements
- {state_dir}/feedback.md: quality gate results and harness messages

Files you write:
- {state_dir}/intent.md: REQUIRED. One or two sentences acknowledging what you are building
- {state_dir}/plan.md: implementation steps for the project
- {state_dir}/summary.md: REQUIRED. What you built, written BEFORE marking complete
- {state_dir}/status.txt: write "complete" when finished, or "waiting" if you need a human

## Workflow

1. cat {state_dir}/task.md and {state_dir}/feedback.md
2. Write {state_dir}/intent.md
3. Update {state_dir}/plan.md, then implement it
4. Verify your work by running it
5. Write {state_dir}/summary.md, then echo complete > {state_dir}/status.txt

Each iteration starts with fresh context. Anything you need to remember must be written to
a file."""

TOOL_CALLING_FEEDBACK_TEMPLATE = """# Tool Usage Error

You wrote shell commands in your TEXT response instead of using the shell tool.

## How to use the shell tool

You must call the shell tool with a JSON tool call. Do NOT write commands in text.

WRONG (what you did):
  Responding with text containing commands like "cat README.md" or code blocks with shell commands.

RIGHT (what you must do):
  Call the shell tool with: {{"command": "cat README.md"}}
  The tool call is a structured API call, not text in your response.

## Your next step

1. Call the shell tool: {{"command": "cat {state_dir}/task.md"}}
2. Then: {{"command": "cat {state_dir}/feedback.md"}}
3. Then start writing files using the shell tool

Remember: Your text responses should ONLY contain brief reasoning. ALL actions happen through tool calls."""

MISSING_SUMMARY_FEEDBACK_TEMPLATE = """# Completion Not Accepted

You replied without calling any tools, which the harness reads as a completion attempt,
but {state_dir}/summary.md is empty. Finish the work, write what you built to
{state_dir}/summary.md, then write "complete" to {state_dir}/status.txt."""


@dataclass(slots=True)
class LoopResult:
    outcome: LoopOutcome
    iterations: int
    error: str | None = None
    failed_gates: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome in {"success", "waiting"}


def contains_command_patterns(text: str) -> bool:
    """Detect shell commands written as prose instead of tool calls."""
    if '{"command":' in text or '{ "command":' in text:
        return True
    if HEREDOC_WRITE_PATTERN.search(text) or HEREDOC_PATTERN.search(text):
        return True
    if REDIRECT_PATTERN.search(text):
        return True
    for block in CODE_BLOCK_PATTERN.findall(text):
        if len(COMMAND_LINE_PATTERN.findall(block)) >= 3:
            return True
    return False


def build_escalation_text(consecutive_failures: int, max_failures: int, state_dir: str) -> str:
    if consecutive_failures == 0:
        return ""
    if consecutive_failures == 1:
        return (
            "\n\n## ACTION REQUIRED\n"
            "Quality gates failed. You MUST use the shell tool to fix issues.\n"
            f"Read: cat {state_dir}/feedback.md"
        )
    return (
        f"\n\n## CRITICAL: ATTEMPT {consecutive_failures + 1} OF {max_failures}\n"
        f"Gates have failed {consecutive_failures} time(s). "
        f"REQUIRED FIRST ACTION: cat {state_dir}/feedback.md\n"
        "If you respond with text and no tool calls, the task will be terminated."
    )


def build_iteration_prompt(state: TaskState, iteration: int, escalation: str = "") -> str:
    return (
        f"# Iteration {iteration}\n\n"
        f"## Origin\n{state.origin or '(none)'}\n\n"
        f"## Task\n{state.task}\n\n"
        f"## Intent\n{state.intent or '(not yet written)'}\n\n"
        f"## Plan\n{state.plan or '(not yet written)'}\n\n"
        f"## Feedback\n{state.feedback or '(none)'}{escalation}"
    )


@dataclass(slots=True)
class _IterationOutcome:
    explicit_completion: bool = False
    implicit_completion: bool = False
    aborted: bool = False


class LoopOrchestrator:
    def __init__(
        self,
        *,
        gateway: ModelGateway,
        executor: ToolExecutor,
        store: KeyValueStore,
        root: Path,
        config: TaskloopConfig | None = None,
        repository: GitRepository | None = None,
        gates: tuple[QualityGate, ...] | list[QualityGate] = DEFAULT_GATES,
        error_collector: ErrorCollector | None = None,
        event_hook: LoopEventHook | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.gateway = gateway
        self.executor = executor
        self.store = store
        self.state = TaskStateStore(store)
        self.root = root.resolve()
        self.config = config or TaskloopConfig.default()
        self.repository = repository
        self.gates = tuple(gates)
        self.error_collector = error_collector
        self.event_hook = event_hook
        state_dir = self.config.project.state_dir
        self.system_prompt = system_prompt or SYSTEM_PROMPT_TEMPLATE.format(state_dir=state_dir)
        self.author = CommitAuthor(
            name=self.config.loop.commit_author_name,
            email=self.config.loop.commit_author_email,
        )
        self.command_attempts: list[CommandAttempt] = []
        self._consecutive_failures = 0
        self._iteration = 0

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @property
    def state_dir(self) -> str:
        return self.config.project.state_dir

    def _gate_context(self) -> GateContext:
        project = self.config.project
        return GateContext(
            state=self.state,
            config=self.config.gates,
            commands={
                "lint": project.lint_command,
                "type-check": project.type_check_command,
                "test": project.test_command,
            },
            state_dir=self.state_dir,
            error_collector=self.error_collector,
        )

    async def run(
        self,
        cancel: asyncio.Event | None = None,
        *,
        task_id: str | None = None,
    ) -> LoopResult:
        """Drive the current task to a result. Never raises."""
        self.command_attempts = []
        self._consecutive_failures = 0
        self._iteration = 0
        try:
            return await self._run(cancel, task_id or f"task-{int(time.time())}")
        except Exception as exc:
            logger.exception("Loop failed at iteration %s", self._iteration)
            self._emit({"event": "error", "iteration": self._iteration, "error": str(exc)})
            return LoopResult("failure", self._iteration, error=INTERNAL_ERROR_MESSAGE)

    async def _run(self, cancel: asyncio.Event | None, task_id: str) -> LoopResult:
        loop_config = self.config.loop
        for iteration in range(1, loop_config.max_iterations + 1):
            self._iteration = iteration
            self._emit({"event": "iteration_started", "iteration": iteration})
            if cancel is not None and cancel.is_set():
                logger.info("Cancelled before iteration %s", iteration)
                return LoopResult("aborted", iteration, error=ABORTED_MESSAGE)

            start_state = self.state.snapshot()
            self.state.set_iteration(iteration)

            outcome = await self._run_iteration(iteration, start_state, cancel)
            if outcome.aborted:
                return LoopResult("aborted", iteration, error=ABORTED_MESSAGE)

            self._notify_field_changes(start_state)
            self._checkpoint(iteration)

            result = await self._evaluate_completion(iteration, outcome, task_id, cancel)
            if result is not None:
                return result

            if self.state.is_waiting():
                self._emit({"event": "status", "message": WAITING_MESSAGE})
                return LoopResult("waiting", iteration, error=WAITING_MESSAGE)

        return LoopResult("failure", loop_config.max_iterations, error=MAX_ITERATIONS_MESSAGE)

    async def _run_iteration(
        self,
        iteration: int,
        start_state: TaskState,
        cancel: asyncio.Event | None,
    ) -> _IterationOutcome:
        escalation = build_escalation_text(
            self._consecutive_failures,
            self.config.loop.max_consecutive_gate_failures,
            self.state_dir,
        )
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": build_iteration_prompt(start_state, iteration, escalation)},
        ]
        outcome = _IterationOutcome()
        max_calls = self.config.loop.max_tool_calls_per_iteration
        tool_calls = 0

        while tool_calls < max_calls:
            if cancel is not None and cancel.is_set():
                outcome.aborted = True
                return outcome
            try:
                reply = await self.gateway.chat(messages, TOOL_CATALOG, cancel)
            except GatewayCancelledError:
                outcome.aborted = True
                return outcome
            except Exception as exc:
                logger.warning("Model call failed on iteration %s: %s", iteration, exc)
                self._emit({"event": "error", "iteration": iteration, "error": str(exc)})
                self._write_model_error(exc, start_state)
                return outcome

            messages.append(reply.to_message())
            if not reply.tool_calls:
                if reply.content:
                    self._emit({"event": "message", "content": reply.content})
                if reply.finish_reason == "stop":
                    if contains_command_patterns(reply.content):
                        logger.info("Commands written as text on iteration %s", iteration)
                        self.state.write_feedback(
                            TOOL_CALLING_FEEDBACK_TEMPLATE.format(state_dir=self.state_dir)
                        )
                        self.state.set_status("running")
                        self._emit(
                            {
                                "event": "status",
                                "message": "Model wrote commands in text instead of using the tool",
                            }
                        )
                    else:
                        outcome.implicit_completion = True
                return outcome

            for call in reply.tool_calls:
                invocation = parse_tool_arguments(call.name, call.arguments)
                if isinstance(invocation, InvalidToolCall):
                    messages.append(
                        {"role": "tool", "tool_call_id": call.id, "content": invocation.reason}
                    )
                    tool_calls += 1
                    if tool_calls >= max_calls:
                        break
                    continue

                if invocation.status:
                    self._emit({"event": "status", "message": invocation.status})
                self._emit({"event": "action", "message": f"shell: {invocation.display_command}"})

                result = await self.executor.execute(invocation.command, self.root)
                output = result.render()
                self._emit({"event": "tool_call", "command": invocation.command, "output": output})
                self._record_attempt(invocation.command, result.exit_code, result.stderr)
                if self.config.observability.track_gaps and is_command_not_found(
                    result.exit_code, result.stderr
                ):
                    self._record_gap(
                        invocation.command, result.stderr, invocation.status, iteration, start_state
                    )
                messages.append({"role": "tool", "tool_call_id": call.id, "content": output})
                tool_calls += 1

                if self.state.is_complete():
                    logger.info("Status set to complete mid-batch on iteration %s", iteration)
                    outcome.explicit_completion = True
                    return outcome
                if tool_calls >= max_calls:
                    break

        if tool_calls >= max_calls:
            logger.info("Tool call cap of %s reached on iteration %s", max_calls, iteration)
        return outcome

    def _record_attempt(self, command: str, exit_code: int, stderr: str) -> None:
        name, args = parse_command_string(command)
        success = exit_code == 0
        self.command_attempts.append(
            CommandAttempt(
                command=name, args=args, success=success, error=None if success else stderr
            )
        )

    def _record_gap(
        self,
        command: str,
        stderr: str,
        reasoning: str | None,
        iteration: int,
        start_state: TaskState,
    ) -> None:
        name, args = parse_command_string(command)
        recorded = record_gap(
            self.store,
            GapRecord(
                command=name,
                args=args,
                error=stderr,
                context=start_state.task[:200],
                reasoning=reasoning or "",
                task_id=f"iteration-{iteration}",
            ),
        )
        if recorded:
            self._emit({"event": "gap_recorded", "command": name})

    def _write_model_error(self, exc: Exception, start_state: TaskState) -> None:
        feedback = f"# Model Error\n\nThe previous model call failed: {exc}\nContinue the task."
        if start_state.feedback and not start_state.feedback.startswith("# Model Error"):
            feedback += "\n\n" + start_state.feedback
        self.state.write_feedback(feedback)

    def _notify_field_changes(self, start_state: TaskState) -> None:
        current = self.state.snapshot()
        if current.intent and current.intent != start_state.intent:
            self._emit({"event": "intent_changed", "intent": current.intent})
        if current.summary and current.summary != start_state.summary:
            self._emit({"event": "summary_changed", "summary": current.summary})

    def _checkpoint(self, iteration: int) -> None:
        if self.repository is None:
            return
        try:
            result = self.repository.commit_all(f"checkpoint: iteration {iteration}", self.author)
        except OSError as exc:
            logger.warning("Checkpoint commit for iteration %s failed: %s", iteration, exc)
            return
        if result.kind == "failed":
            logger.warning(
                "Checkpoint commit for iteration %s failed: %s", iteration, result.detail
            )

    async def _evaluate_completion(
        self,
        iteration: int,
        outcome: _IterationOutcome,
        task_id: str,
        cancel: asyncio.Event | None,
    ) -> LoopResult | None:
        explicit = outcome.explicit_completion or self.state.is_complete()
        if not explicit and not outcome.implicit_completion:
            return None
        if (
            not explicit
            and self.config.loop.implicit_completion_requires_summary
            and not self.state.read_field("summary")
        ):
            self.state.write_feedback(
                MISSING_SUMMARY_FEEDBACK_TEMPLATE.format(state_dir=self.state_dir)
            )
            self._emit({"event": "status", "message": "Completion attempt without a summary"})
            return None

        summary = await asyncio.to_thread(
            run_quality_gates, self.root, self._gate_context(), self.gates
        )
        failed = summary.failed_gates
        self._emit({"event": "gates_checked", "passed": summary.passed, "failed": failed})
        if summary.passed:
            return await self._finish(iteration, task_id, cancel)

        self._consecutive_failures += 1
        if self._consecutive_failures >= self.config.loop.max_consecutive_gate_failures:
            return LoopResult(
                "failure",
                iteration,
                error=(
                    f"Quality gates failed {self._consecutive_failures} times: "
                    + ", ".join(failed)
                ),
                failed_gates=failed,
            )
        self._write_gate_feedback(summary)
        return None

    def _write_gate_feedback(self, summary: GateRunSummary) -> None:
        self.state.write_feedback(render_gate_feedback(summary.results, self.state_dir))
        self.state.set_status("running")
        self._emit(
            {
                "event": "status",
                "message": f"Quality gates failed: {', '.join(summary.failed_gates)}",
            }
        )

    async def _finish(
        self, iteration: int, task_id: str, cancel: asyncio.Event | None
    ) -> LoopResult:
        observability = self.config.observability
        if (
            observability.capture_reflection
            and iteration >= observability.min_iterations_for_reflection
        ):
            reflection = await capture_reflection(
                self.gateway,
                self.store,
                task_description=self.state.read_field("task"),
                task_id=task_id,
                attempts=list(self.command_attempts),
                runtime_errors=self.error_collector.errors() if self.error_collector else [],
                cancel=cancel,
            )
            if reflection is not None:
                self._emit({"event": "reflection_captured", "task_id": reflection.task_id})
        self._emit(
            {
                "event": "completed",
                "iterations": iteration,
                "summary": self.state.read_field("summary"),
            }
        )
        return LoopResult("success", iteration)
