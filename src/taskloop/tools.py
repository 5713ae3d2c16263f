"""Shell tool catalog, argument validation and the default executor."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SHELL_TOOL_NAME = "shell"
NOT_FOUND_EXIT_CODE = 127
MAX_OUTPUT_CHARS = 20_000

SHELL_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": SHELL_TOOL_NAME,
        "description": (
            "Run a shell command in the project directory. Read files with cat, write "
            "them with heredocs or redirects, and run project scripts. State files live "
            "in the state directory: write intent, plan and summary there, and write "
            "'complete' to status.txt when the task is done."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The command to run"},
                "_status": {
                    "type": "string",
                    "description": (
                        "Optional: Brief reasoning/intent (1 sentence max). "
                        "Omit if self-explanatory."
                    ),
                },
            },
            "required": ["command"],
        },
    },
}

TOOL_CATALOG: list[dict[str, Any]] = [SHELL_TOOL]

PARSE_ERROR_MESSAGE = "Error: could not parse tool arguments. Ensure valid JSON."
MISSING_COMMAND_MESSAGE = "Error: malformed tool call, no command string. Try again."


@dataclass(slots=True, frozen=True)
class ShellInvocation:
    command: str
    status: str | None = None

    @property
    def display_command(self) -> str:
        if "<<" in self.command:
            return self.command.split("<<", maxsplit=1)[0].strip() + " << ..."
        return self.command


@dataclass(slots=True, frozen=True)
class InvalidToolCall:
    reason: str


ToolInvocation = ShellInvocation | InvalidToolCall


def parse_tool_arguments(name: str, raw_arguments: str | None) -> ToolInvocation:
    """Validate model-supplied tool arguments before anything executes them."""
    if name != SHELL_TOOL_NAME:
        return InvalidToolCall(
            f'Error: unknown tool "{name}". Use "{SHELL_TOOL_NAME}" for command execution.'
        )
    try:
        payload = json.loads(raw_arguments or "{}")
    except json.JSONDecodeError:
        return InvalidToolCall(PARSE_ERROR_MESSAGE)
    if not isinstance(payload, dict):
        return InvalidToolCall(PARSE_ERROR_MESSAGE)

    command = payload.get("command")
    if not isinstance(command, str) or not command.strip():
        return InvalidToolCall(MISSING_COMMAND_MESSAGE)

    status = payload.get("_status")
    if status is not None and not isinstance(status, str):
        status = str(status)
    if isinstance(status, str):
        status = status.strip().splitlines()[0] if status.strip() else None
    return ShellInvocation(command=command, status=status)


@dataclass(slots=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def render(self) -> str:
        output = self.stdout
        if self.stderr:
            output += f"\nSTDERR: {self.stderr}"
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + "\n... (output truncated)"
        return output


class ToolExecutor(ABC):
    @abstractmethod
    async def execute(self, command: str, cwd: Path) -> ExecResult:
        """Run the command to completion and capture its output."""


class SubprocessExecutor(ToolExecutor):
    """Runs commands through the system shell."""

    def __init__(self, *, timeout_seconds: float = 300.0) -> None:
        self.timeout_seconds = timeout_seconds

    async def execute(self, command: str, cwd: Path) -> ExecResult:
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return ExecResult(stdout="", stderr=str(exc), exit_code=NOT_FOUND_EXIT_CODE)

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("Command timed out after %.1fs: %s", self.timeout_seconds, command)
            return ExecResult(
                stdout="",
                stderr=f"Command timed out after {self.timeout_seconds:.1f}s",
                exit_code=124,
            )
        return ExecResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else 1,
        )
