"""Quality gates: deterministic checks run when the model claims completion.

Every gate runs on every invocation. A gate that raises is reported as a
failing result instead of propagating, so the loop always gets a complete
picture to feed back into the next iteration.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from taskloop.config import GatesConfig
from taskloop.state.store import FileStore, TaskStateStore

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
CONFLICT_START = re.compile(r"^<{7}(?:\s|$)")
CONFLICT_END = re.compile(r"^>{7}(?:\s|$)")
SKIPPED_DIRS = {".git", ".hg", ".venv", "venv", "node_modules", "__pycache__", ".mypy_cache"}
MAX_SCANNED_FILES = 2000
MAX_SCANNED_BYTES = 1_000_000
COMMAND_OUTPUT_TAIL = 1000


@dataclass(slots=True)
class GateResult:
    passed: bool
    message: str | None = None


@dataclass(slots=True, frozen=True)
class RuntimeErrorRecord:
    message: str
    filename: str | None = None
    line: int | None = None


class ErrorCollector:
    """Accumulates runtime errors observed while the task's artifacts run."""

    def __init__(self) -> None:
        self._errors: list[RuntimeErrorRecord] = []

    def record(self, message: str, *, filename: str | None = None, line: int | None = None) -> None:
        self._errors.append(RuntimeErrorRecord(message=message, filename=filename, line=line))

    def errors(self) -> list[RuntimeErrorRecord]:
        return list(self._errors)

    def clear(self) -> None:
        self._errors.clear()


@dataclass(slots=True)
class GateContext:
    state: TaskStateStore
    config: GatesConfig = field(default_factory=GatesConfig)
    commands: dict[str, str] = field(default_factory=dict)
    state_dir: str = ".taskloop"
    error_collector: ErrorCollector | None = None


GateCheck = Callable[[Path, GateContext], GateResult]


@dataclass(slots=True, frozen=True)
class QualityGate:
    name: str
    description: str
    check: GateCheck


@dataclass(slots=True, frozen=True)
class GateOutcome:
    gate: str
    result: GateResult


@dataclass(slots=True)
class GateRunSummary:
    passed: bool
    results: list[GateOutcome]

    @property
    def failed_gates(self) -> list[str]:
        return [outcome.gate for outcome in self.results if not outcome.result.passed]


def _iter_artifact_files(root: Path, state_dir: str) -> list[Path]:
    files: list[Path] = []
    skipped = SKIPPED_DIRS | {state_dir}
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in skipped)
        for filename in sorted(filenames):
            files.append(Path(current) / filename)
            if len(files) >= MAX_SCANNED_FILES:
                return files
    return files


def run_check_command(command: str, cwd: Path) -> dict[str, object]:
    command_text = command.strip()
    if not command_text:
        return {
            "command": command,
            "exit_code": 1,
            "stdout_tail": "",
            "stderr_tail": "Command is empty.",
        }

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        return {
            "command": command,
            "exit_code": 127,
            "stdout_tail": "",
            "stderr_tail": str(exc),
        }
    return {
        "command": command,
        "exit_code": proc.returncode,
        "stdout_tail": proc.stdout.strip()[-COMMAND_OUTPUT_TAIL:],
        "stderr_tail": proc.stderr.strip()[-COMMAND_OUTPUT_TAIL:],
    }


def check_has_summary(root: Path, context: GateContext) -> GateResult:
    summary = context.state.read_field("summary")
    if len(summary) < context.config.min_summary_chars:
        return GateResult(
            False,
            "Missing or empty summary. Write a brief summary of what you built "
            "before marking complete.",
        )
    return GateResult(True)


def check_has_intent(root: Path, context: GateContext) -> GateResult:
    if not context.state.read_field("intent"):
        return GateResult(
            False, "Missing intent. Acknowledge what you are building in the intent file."
        )
    return GateResult(True)


def check_required_files(root: Path, context: GateContext) -> GateResult:
    missing = [
        relative for relative in context.config.required_files if not (root / relative).is_file()
    ]
    if missing:
        return GateResult(False, "Missing required file(s): " + ", ".join(missing))
    return GateResult(True)


def check_no_conflict_markers(root: Path, context: GateContext) -> GateResult:
    offenders: list[str] = []
    for path in _iter_artifact_files(root, context.state_dir):
        try:
            if path.stat().st_size > MAX_SCANNED_BYTES:
                continue
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        lines = text.splitlines()
        has_start = any(CONFLICT_START.match(line) for line in lines)
        has_end = any(CONFLICT_END.match(line) for line in lines)
        if has_start and has_end:
            offenders.append(path.relative_to(root).as_posix())
    if offenders:
        return GateResult(
            False, "Unresolved merge conflict markers in: " + ", ".join(offenders[:20])
        )
    return GateResult(True)


def check_no_forbidden_paths(root: Path, context: GateContext) -> GateResult:
    patterns = context.config.forbidden_paths
    if not patterns:
        return GateResult(True)
    matches: list[str] = []
    for path in _iter_artifact_files(root, context.state_dir):
        relative = path.relative_to(root).as_posix()
        for pattern in patterns:
            if fnmatch.fnmatch(relative, pattern):
                matches.append(f"{relative} (matched '{pattern}')")
                break
    if matches:
        return GateResult(False, "Forbidden path(s) present: " + ", ".join(matches[:20]))
    return GateResult(True)


def check_commands(root: Path, context: GateContext) -> GateResult:
    if not context.config.run_commands:
        return GateResult(True)
    failures: list[str] = []
    for label, command in context.commands.items():
        if not command.strip():
            continue
        result = run_check_command(command, root)
        if result["exit_code"] != 0:
            tail = str(result["stderr_tail"] or result["stdout_tail"])
            failures.append(f"{label} command `{command}` exited {result['exit_code']}:\n{tail}")
    if failures:
        return GateResult(False, "\n\n".join(failures))
    return GateResult(True)


def check_runtime_errors(root: Path, context: GateContext) -> GateResult:
    if context.error_collector is None:
        return GateResult(True)
    errors = context.error_collector.errors()
    if not errors:
        return GateResult(True)
    lines: list[str] = []
    for error in errors[:20]:
        location = ""
        if error.filename:
            location = f" at {error.filename}"
            if error.line is not None:
                location += f":{error.line}"
        lines.append(f"- {error.message}{location}")
    return GateResult(False, f"{len(errors)} runtime error(s):\n" + "\n".join(lines))


DEFAULT_GATES: tuple[QualityGate, ...] = (
    QualityGate("has-summary", "A summary of the work must exist", check_has_summary),
    QualityGate("has-intent", "The intent acknowledgement must exist", check_has_intent),
    QualityGate("required-files", "Configured files must exist", check_required_files),
    QualityGate(
        "no-conflict-markers",
        "No file may contain unresolved merge conflict markers",
        check_no_conflict_markers,
    ),
    QualityGate(
        "no-forbidden-paths",
        "No file may match a forbidden path pattern",
        check_no_forbidden_paths,
    ),
    QualityGate("command-checks", "Lint, type-check and test commands must pass", check_commands),
    QualityGate(
        "runtime-errors", "No runtime errors may have been collected", check_runtime_errors
    ),
)

REMEDIATION: dict[str, str] = {
    "has-summary": (
        "FIX: Write what you built to the summary file, for example:\n"
        '  echo "Built a [description] with [key features]." > {state_dir}/summary.md\n'
        "Then mark status as complete again."
    ),
    "has-intent": (
        "FIX: Write one or two sentences describing what you are building to "
        "{state_dir}/intent.md, then mark status as complete again."
    ),
    "required-files": "FIX: Create each missing file listed above before marking complete.",
    "no-conflict-markers": (
        "FIX: Open each listed file, resolve the conflicting hunks and delete the "
        "<<<<<<< / ======= / >>>>>>> marker lines."
    ),
    "no-forbidden-paths": (
        "FIX: Remove or relocate the listed files. They match guardrail patterns and "
        "must not be part of the project tree."
    ),
    "command-checks": (
        "FIX: Run the failing command yourself, read its output and fix the reported "
        "problems until it exits 0."
    ),
    "runtime-errors": (
        "FIX: Check the errors above for missing imports, undefined names and "
        "null access, then run the code again."
    ),
}


def build_gate_context(
    root: Path,
    *,
    state: TaskStateStore | None = None,
    config: GatesConfig | None = None,
    commands: dict[str, str] | None = None,
    state_dir: str = ".taskloop",
    error_collector: ErrorCollector | None = None,
) -> GateContext:
    return GateContext(
        state=state or TaskStateStore(FileStore(root, state_dir)),
        config=config or GatesConfig(),
        commands=dict(commands or {}),
        state_dir=state_dir,
        error_collector=error_collector,
    )


def run_quality_gates(
    root: Path,
    context: GateContext | None = None,
    gates: tuple[QualityGate, ...] | list[QualityGate] = DEFAULT_GATES,
) -> GateRunSummary:
    gate_context = context or build_gate_context(root)
    results: list[GateOutcome] = []
    for gate in gates:
        try:
            result = gate.check(root, gate_context)
            if not isinstance(result, GateResult):
                result = GateResult(False, f"Gate error: unexpected result {result!r}")
        except Exception as exc:
            logger.exception("Gate %s raised", gate.name)
            result = GateResult(False, f"Gate error: {exc}")
        results.append(GateOutcome(gate=gate.name, result=result))
    passed = all(outcome.result.passed for outcome in results)
    return GateRunSummary(passed=passed, results=results)


def render_gate_feedback(results: list[GateOutcome], state_dir: str = ".taskloop") -> str:
    failures = [outcome for outcome in results if not outcome.result.passed]
    info = [outcome for outcome in results if outcome.result.passed and outcome.result.message]

    lines: list[str] = []
    if failures:
        lines.append("# Quality Gate Failures\n")
        for outcome in failures:
            lines.append(f"## {outcome.gate}")
            lines.append(outcome.result.message or "Failed without specific feedback")
            remediation = REMEDIATION.get(outcome.gate)
            if remediation:
                lines.append("")
                lines.append(remediation.format(state_dir=state_dir))
            lines.append("")
        lines.append("\n---\nFix these issues and mark status as complete again.")

    if info:
        if lines:
            lines.append("\n---\n")
        lines.append("# Info\n")
        for outcome in info:
            lines.append(f"**{outcome.gate}:** {outcome.result.message}")

    return "\n".join(lines)
