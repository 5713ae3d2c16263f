from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    state_dir: str = ".taskloop"
    lint_command: str = ""
    type_check_command: str = ""
    test_command: str = ""


@dataclass(slots=True)
class BackendConfig:
    model: str = "gpt-4.1-mini"
    base_url: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 20
    max_tool_calls_per_iteration: int = 50
    max_consecutive_gate_failures: int = 5
    implicit_completion_requires_summary: bool = True
    commit_author_name: str = "taskloop"
    commit_author_email: str = "taskloop@localhost"


@dataclass(slots=True)
class GatesConfig:
    min_summary_chars: int = 20
    required_files: list[str] = field(default_factory=list)
    forbidden_paths: list[str] = field(
        default_factory=lambda: [".env", "secrets/*", "production.config.*"]
    )
    run_commands: bool = True


@dataclass(slots=True)
class ObservabilityConfig:
    track_gaps: bool = False
    capture_reflection: bool = False
    min_iterations_for_reflection: int = 2


@dataclass(slots=True)
class ParserConfig:
    enabled: bool = True
    max_file_list: int = 20
    summary_chars: int = 200


@dataclass(slots=True)
class TaskloopConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    parser: ParserConfig = field(default_factory=ParserConfig)

    @classmethod
    def default(cls) -> TaskloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskloopConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            loop=LoopConfig(**data.get("loop", {})),
            gates=GatesConfig(**data.get("gates", {})),
            observability=ObservabilityConfig(**data.get("observability", {})),
            parser=ParserConfig(**data.get("parser", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "state_dir": self.project.state_dir,
                "lint_command": self.project.lint_command,
                "type_check_command": self.project.type_check_command,
                "test_command": self.project.test_command,
            },
            "backend": {
                "model": self.backend.model,
                "base_url": self.backend.base_url,
                "api_key_env": self.backend.api_key_env,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "max_tool_calls_per_iteration": self.loop.max_tool_calls_per_iteration,
                "max_consecutive_gate_failures": self.loop.max_consecutive_gate_failures,
                "implicit_completion_requires_summary": (
                    self.loop.implicit_completion_requires_summary
                ),
                "commit_author_name": self.loop.commit_author_name,
                "commit_author_email": self.loop.commit_author_email,
            },
            "gates": {
                "min_summary_chars": self.gates.min_summary_chars,
                "required_files": list(self.gates.required_files),
                "forbidden_paths": list(self.gates.forbidden_paths),
                "run_commands": self.gates.run_commands,
            },
            "observability": {
                "track_gaps": self.observability.track_gaps,
                "capture_reflection": self.observability.capture_reflection,
                "min_iterations_for_reflection": (
                    self.observability.min_iterations_for_reflection
                ),
            },
            "parser": {
                "enabled": self.parser.enabled,
                "max_file_list": self.parser.max_file_list,
                "summary_chars": self.parser.summary_chars,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "loop", "gates", "observability", "parser"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskloopConfig:
    if not path.exists():
        return TaskloopConfig.default()
    return TaskloopConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: TaskloopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
