import tomllib
from pathlib import Path

from taskloop import __version__
from taskloop.config import TaskloopConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "taskloop.toml"
    config = TaskloopConfig.default()
    config.project.name = "taskloop-test"
    config.project.state_dir = ".agent"
    config.project.test_command = 'pytest -q -k "not slow"'
    config.backend.model = "local-model"
    config.backend.base_url = "http://localhost:11434/v1"
    config.backend.max_retries = 3
    config.backend.retry_backoff_seconds = 1.5
    config.loop.max_iterations = 7
    config.loop.implicit_completion_requires_summary = False
    config.gates.required_files = ["index.html"]
    config.gates.forbidden_paths = []
    config.observability.track_gaps = True
    config.parser.enabled = False

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "taskloop-test"
    assert loaded.project.state_dir == ".agent"
    assert loaded.project.test_command == 'pytest -q -k "not slow"'
    assert loaded.backend.model == "local-model"
    assert loaded.backend.base_url == "http://localhost:11434/v1"
    assert loaded.backend.max_retries == 3
    assert loaded.backend.retry_backoff_seconds == 1.5
    assert loaded.loop.max_iterations == 7
    assert loaded.loop.max_consecutive_gate_failures == 5
    assert loaded.loop.implicit_completion_requires_summary is False
    assert loaded.gates.required_files == ["index.html"]
    assert loaded.gates.forbidden_paths == []
    assert loaded.observability.track_gaps is True
    assert loaded.parser.enabled is False


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == TaskloopConfig.default()


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(TaskloopConfig.default())

    for section in ("project", "backend", "loop", "gates", "observability", "parser"):
        assert f"[{section}]" in rendered
    assert "max_tool_calls_per_iteration = 50" in rendered
    assert 'forbidden_paths = [".env", "secrets/*", "production.config.*"]' in rendered
    assert "retry_backoff_seconds = 0.5" in rendered


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
