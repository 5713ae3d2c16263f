from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import click

from taskloop.backends import OpenAIChatGateway, ResilientGateway, RetryPolicy
from taskloop.config import TaskloopConfig, load_config, save_config
from taskloop.gaps import aggregate_gaps, clear_gaps, format_gaps_report, load_gaps
from taskloop.reflection import load_reflections, summarize_reflections
from taskloop.runner import TaskRunner
from taskloop.state import FileStore, GitRepository, TaskLifecycle, TaskStateStore
from taskloop.tools import SubprocessExecutor

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "taskloop.toml"
ECHOED_EVENTS = {"status", "action", "intent_changed", "gates_checked", "gap_recorded", "error"}


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: TaskloopConfig
    store: FileStore
    repository: GitRepository | None


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    repository = GitRepository(repo_root)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=FileStore(repo_root, config.project.state_dir),
        repository=repository if repository.is_repository() else None,
    )


def _log_gateway_event(event: dict[str, Any]) -> None:
    logger.info("Gateway event %s: %s", event.get("event"), event)


def _build_gateway(config: TaskloopConfig) -> ResilientGateway:
    primary = OpenAIChatGateway(
        model=config.backend.model,
        base_url=config.backend.base_url or None,
        api_key_env=config.backend.api_key_env,
    )
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientGateway(primary, policy, event_hook=_log_gateway_event)


def _echo_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "iteration_started":
        click.echo(f"== Iteration {event['iteration']}")
    elif name == "gates_checked":
        failed = ", ".join(event.get("failed", []))
        verdict = "passed" if event.get("passed") else f"failed: {failed}"
        click.echo(f"Quality gates {verdict}")
    elif name == "intent_changed":
        click.echo(f"Intent: {event['intent']}")
    elif name in ECHOED_EVENTS:
        message = event.get("message") or event.get("command") or event.get("error") or ""
        click.echo(f"[{name}] {message}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Taskloop CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--model", default=None, help="Model name for the chat gateway.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(model: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if model:
        config.backend.model = model
    if config.project.name == "my-project":
        config.project.name = repo_root.name
    save_config(config_path, config)

    (repo_root / config.project.state_dir).mkdir(parents=True, exist_ok=True)
    initialized = GitRepository(repo_root).ensure_initialized()
    if not initialized.ok:
        raise click.ClickException(f"git init failed: {initialized.detail}")

    click.echo(f"Initialized taskloop in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State directory: {config.project.state_dir}")
    click.echo(f"Model: {config.backend.model}")


@cli.command("run")
@click.argument("message")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(message: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    if runtime.repository is None:
        click.echo("Warning: not a git repository, snapshots and checkpoints are disabled.")
    runner = TaskRunner(
        root=runtime.repo_root,
        store=runtime.store,
        gateway=_build_gateway(runtime.config),
        executor=SubprocessExecutor(),
        config=runtime.config,
        repository=runtime.repository,
        event_hook=_echo_event,
    )
    try:
        outcome = asyncio.run(runner.handle_message(message))
    except KeyboardInterrupt as exc:
        raise click.Abort() from exc

    result = outcome.result
    click.echo(f"Task {outcome.task_number}: {outcome.task.title}")
    click.echo(f"Outcome: {result.outcome} after {result.iterations} iteration(s)")
    if outcome.post_tag:
        click.echo(f"Snapshot: {outcome.post_tag}")
    if result.error and result.outcome != "success":
        if result.outcome == "waiting":
            click.echo(result.error)
            return
        raise click.ClickException(result.error)


@cli.command("status")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    snapshot = TaskStateStore(runtime.store).snapshot()
    lifecycle = TaskLifecycle(runtime.store, runtime.repository)
    payload = {
        "project": runtime.config.project.name,
        "task_counter": lifecycle.read_counter(),
        "state": asdict(snapshot),
        "tags": runtime.repository.list_tags("task-*") if runtime.repository else [],
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("history")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def history_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    history = TaskLifecycle(runtime.store, runtime.repository).read_task_history()
    if not history.strip():
        click.echo("No task history yet.")
        return
    click.echo(history.rstrip())


@cli.command("gaps")
@click.option("--clear", "clear_records", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def gaps_command(clear_records: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    if clear_records:
        clear_gaps(runtime.store)
        click.echo("Cleared recorded gaps.")
        return
    click.echo(format_gaps_report(aggregate_gaps(load_gaps(runtime.store))))


@cli.command("reflections")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def reflections_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    summary = summarize_reflections(load_reflections(runtime.store))
    click.echo(json.dumps(asdict(summary), ensure_ascii=False, indent=2))
