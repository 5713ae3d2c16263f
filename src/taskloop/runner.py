from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from taskloop.backends.base import ModelGateway
from taskloop.config import TaskloopConfig
from taskloop.gates import DEFAULT_GATES, ErrorCollector, QualityGate
from taskloop.loop import LoopEventHook, LoopOrchestrator, LoopResult
from taskloop.state.lifecycle import TaskBoundary, TaskLifecycle
from taskloop.state.store import KeyValueStore, TaskStateStore
from taskloop.state.vcs import GitRepository
from taskloop.tasks.models import StructuredTask, format_structured_task
from taskloop.tasks.parser import ParseContext, parse_task
from taskloop.tools import ToolExecutor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskRunOutcome:
    boundary: TaskBoundary
    task: StructuredTask
    result: LoopResult
    post_tag: str | None = None

    @property
    def task_number(self) -> int:
        return self.boundary.task_number


class TaskRunner:
    """Sequences one incoming message: boundary, classification, loop, post snapshot."""

    def __init__(
        self,
        *,
        root: Path,
        store: KeyValueStore,
        gateway: ModelGateway,
        executor: ToolExecutor,
        config: TaskloopConfig | None = None,
        repository: GitRepository | None = None,
        gates: tuple[QualityGate, ...] | list[QualityGate] = DEFAULT_GATES,
        error_collector: ErrorCollector | None = None,
        event_hook: LoopEventHook | None = None,
    ) -> None:
        self.root = root.resolve()
        self.store = store
        self.config = config or TaskloopConfig.default()
        self.gateway = gateway
        self.repository = repository
        self.state = TaskStateStore(store)
        self.lifecycle = TaskLifecycle(store, repository)
        self.orchestrator = LoopOrchestrator(
            gateway=gateway,
            executor=executor,
            store=store,
            root=self.root,
            config=self.config,
            repository=repository,
            gates=gates,
            error_collector=error_collector,
            event_hook=event_hook,
        )

    def _parse_context(self) -> ParseContext:
        parser_config = self.config.parser
        file_list = self.repository.tracked_files() if self.repository is not None else []
        state_prefix = self.config.project.state_dir.rstrip("/") + "/"
        return ParseContext(
            plan_exists=self.state.has_plan(),
            last_summary=self.state.read_field("summary"),
            file_list=[path for path in file_list if not path.startswith(state_prefix)],
            summary_chars=parser_config.summary_chars,
            max_file_list=parser_config.max_file_list,
        )

    async def handle_message(
        self, message: str, cancel: asyncio.Event | None = None
    ) -> TaskRunOutcome:
        boundary = self.lifecycle.begin_task()
        task_number = boundary.task_number
        logger.info("Starting task %s (pre tag: %s)", task_number, boundary.pre_tag)

        gateway = self.gateway if self.config.parser.enabled else None
        task = await parse_task(gateway, message, self._parse_context(), task_number, cancel)
        task.previous_tag = boundary.previous_tag

        self.state.begin_task(
            format_structured_task(task),
            origin_text=f"## Task {task_number}\n\n{message.strip()}\n",
        )

        result = await self.orchestrator.run(cancel, task_id=f"task-{task_number}")
        post_tag: str | None = None
        if result.outcome == "success":
            post_tag = self.lifecycle.complete_task(task_number)
        logger.info(
            "Task %s finished: %s after %s iteration(s)",
            task_number,
            result.outcome,
            result.iterations,
        )
        return TaskRunOutcome(boundary=boundary, task=task, result=result, post_tag=post_tag)
