from pathlib import Path

from taskloop.config import GatesConfig
from taskloop.gates import (
    DEFAULT_GATES,
    ErrorCollector,
    GateContext,
    GateOutcome,
    GateResult,
    QualityGate,
    build_gate_context,
    render_gate_feedback,
    run_check_command,
    run_quality_gates,
)
from taskloop.state import MemoryStore, TaskStateStore


def _context(
    *,
    summary: str = "Built a landing page with a hero section",
    intent: str = "Building a landing page",
    config: GatesConfig | None = None,
    commands: dict[str, str] | None = None,
    error_collector: ErrorCollector | None = None,
) -> GateContext:
    fields = {}
    if summary:
        fields["summary"] = summary
    if intent:
        fields["intent"] = intent
    return build_gate_context(
        Path("."),
        state=TaskStateStore(MemoryStore(fields)),
        config=config or GatesConfig(),
        commands=commands,
        error_collector=error_collector,
    )


def _failed(summary, name: str) -> str:
    for outcome in summary.results:
        if outcome.gate == name:
            assert outcome.result.passed is False
            return outcome.result.message or ""
    raise AssertionError(f"gate {name} did not run")


def test_default_gates_pass_on_a_clean_tree(tmp_path: Path) -> None:
    (tmp_path / "index.html").write_text("<h1>hello</h1>\n", encoding="utf-8")

    summary = run_quality_gates(tmp_path, _context())

    assert summary.passed is True
    assert summary.failed_gates == []
    assert [outcome.gate for outcome in summary.results] == [gate.name for gate in DEFAULT_GATES]


def test_missing_summary_fails_and_every_gate_still_runs(tmp_path: Path) -> None:
    summary = run_quality_gates(tmp_path, _context(summary="", intent=""))

    assert summary.passed is False
    assert summary.failed_gates == ["has-summary", "has-intent"]
    assert len(summary.results) == len(DEFAULT_GATES)

    feedback = render_gate_feedback(summary.results)
    assert feedback.startswith("# Quality Gate Failures")
    assert "## has-summary" in feedback
    assert "## has-intent" in feedback
    assert "FIX: Write what you built to the summary file" in feedback
    assert feedback.rstrip().endswith("Fix these issues and mark status as complete again.")


def test_short_summary_is_rejected(tmp_path: Path) -> None:
    summary = run_quality_gates(tmp_path, _context(summary="done"))

    assert "Missing or empty summary" in _failed(summary, "has-summary")


def test_raising_gate_is_reported_as_failure(tmp_path: Path) -> None:
    calls: list[str] = []

    def explode(root: Path, context: GateContext) -> GateResult:
        raise ValueError("disk on fire")

    def record(root: Path, context: GateContext) -> GateResult:
        calls.append("after")
        return GateResult(True)

    gates = [QualityGate("explodes", "", explode), QualityGate("after", "", record)]

    summary = run_quality_gates(tmp_path, _context(), gates)

    assert summary.passed is False
    assert _failed(summary, "explodes") == "Gate error: disk on fire"
    assert calls == ["after"]


def test_conflict_markers_need_both_ends(tmp_path: Path) -> None:
    (tmp_path / "half.txt").write_text("<<<<<<< HEAD\nonly the start\n", encoding="utf-8")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text(
        "<<<<<<< HEAD\na = 1\n=======\na = 2\n>>>>>>> branch\n", encoding="utf-8"
    )

    summary = run_quality_gates(tmp_path, _context())

    message = _failed(summary, "no-conflict-markers")
    assert "src/app.py" in message
    assert "half.txt" not in message


def test_state_directory_is_not_scanned(tmp_path: Path) -> None:
    state_dir = tmp_path / ".taskloop"
    state_dir.mkdir()
    (state_dir / "feedback.md").write_text("<<<<<<< a\n>>>>>>> b\n", encoding="utf-8")
    (state_dir / ".env").write_text("SECRET=1\n", encoding="utf-8")

    summary = run_quality_gates(tmp_path, _context())

    assert summary.passed is True


def test_forbidden_paths_are_reported(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("API_KEY=abc\n", encoding="utf-8")
    (tmp_path / "secrets").mkdir()
    (tmp_path / "secrets" / "token.txt").write_text("t\n", encoding="utf-8")

    summary = run_quality_gates(tmp_path, _context())

    message = _failed(summary, "no-forbidden-paths")
    assert ".env (matched '.env')" in message
    assert "secrets/token.txt (matched 'secrets/*')" in message


def test_required_files(tmp_path: Path) -> None:
    (tmp_path / "README.md").write_text("# demo\n", encoding="utf-8")
    config = GatesConfig(required_files=["README.md", "index.html"])

    summary = run_quality_gates(tmp_path, _context(config=config))

    assert _failed(summary, "required-files") == "Missing required file(s): index.html"


def test_command_checks_report_exit_codes(tmp_path: Path) -> None:
    commands = {
        "lint": 'sh -c "echo lint broke >&2; exit 3"',
        "test": "true",
        "type-check": "",
    }

    summary = run_quality_gates(tmp_path, _context(commands=commands))

    message = _failed(summary, "command-checks")
    assert "lint command" in message
    assert "exited 3" in message
    assert "lint broke" in message
    assert "test command" not in message


def test_command_checks_can_be_disabled(tmp_path: Path) -> None:
    config = GatesConfig(run_commands=False)

    summary = run_quality_gates(tmp_path, _context(config=config, commands={"lint": "false"}))

    assert summary.passed is True


def test_run_check_command_missing_binary(tmp_path: Path) -> None:
    result = run_check_command("definitely-not-a-real-binary-xyz --flag", tmp_path)

    assert result["exit_code"] == 127


def test_runtime_errors_from_collector(tmp_path: Path) -> None:
    collector = ErrorCollector()
    collector.record("NameError: name 'foo' is not defined", filename="app.py", line=4)
    collector.record("TypeError: bad operand")

    summary = run_quality_gates(tmp_path, _context(error_collector=collector))

    message = _failed(summary, "runtime-errors")
    assert message.startswith("2 runtime error(s):")
    assert "- NameError: name 'foo' is not defined at app.py:4" in message
    assert "- TypeError: bad operand" in message

    collector.clear()
    assert run_quality_gates(tmp_path, _context(error_collector=collector)).passed is True


def test_feedback_lists_info_messages_from_passing_gates() -> None:
    results = [
        GateOutcome("has-summary", GateResult(False, None)),
        GateOutcome("perf", GateResult(True, "bundle is 40kb")),
    ]

    feedback = render_gate_feedback(results)

    assert "Failed without specific feedback" in feedback
    assert "# Info" in feedback
    assert "**perf:** bundle is 40kb" in feedback


def test_feedback_without_failures_has_only_info() -> None:
    feedback = render_gate_feedback([GateOutcome("perf", GateResult(True, "fast"))])

    assert "Quality Gate Failures" not in feedback
    assert feedback.startswith("# Info")


def test_feedback_remediation_uses_configured_state_dir() -> None:
    results = [
        GateOutcome("has-summary", GateResult(False, "summary is empty")),
        GateOutcome("has-intent", GateResult(False, "intent is empty")),
    ]

    feedback = render_gate_feedback(results, state_dir=".agent")

    assert "> .agent/summary.md" in feedback
    assert ".agent/intent.md, then mark status" in feedback
    assert ".taskloop" not in feedback
    assert "> .taskloop/summary.md" in render_gate_feedback(results)
