from taskloop.tasks.models import (
    Requirement,
    ScopeMarker,
    StructuredTask,
    TaskScope,
    TaskType,
    format_structured_task,
)
from taskloop.tasks.parser import ParseContext, TaskParseError, create_fallback_task, parse_task

__all__ = [
    "ParseContext",
    "Requirement",
    "ScopeMarker",
    "StructuredTask",
    "TaskParseError",
    "TaskScope",
    "TaskType",
    "create_fallback_task",
    "format_structured_task",
    "parse_task",
]
