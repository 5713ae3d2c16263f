from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from taskloop.backends.base import ModelGateway
from taskloop.tasks.models import (
    SCOPE_MARKERS,
    TASK_TYPES,
    TITLE_LIMIT,
    Requirement,
    ScopeMarker,
    StructuredTask,
    TaskScope,
    TaskType,
)

logger = logging.getLogger(__name__)

BUGFIX_PATTERN = re.compile(
    r"\b(fix|bug|broken|crash|error|wrong|doesn't work|not working)\b", re.IGNORECASE
)
FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.MULTILINE)
FENCE_CLOSE = re.compile(r"\n?```\s*$", re.MULTILINE)
SUMMARY_LIMIT = 200
FILE_LIST_LIMIT = 20

PARSE_SYSTEM_PROMPT = """You are a task classifier. Given a user message and project context, output ONLY a JSON object with these fields:

{
  "type": "fresh" | "mutation" | "bugfix",
  "title": "short title (max 80 chars)",
  "requirements": [
    { "marker": "ADD" | "MODIFY" | "FIX" | "REMOVE", "description": "what to do" }
  ],
  "scope": {
    "preserve": ["things that must not change"],
    "affectedFiles": ["likely files to touch"]
  }
}

Classification rules:
- "fresh": No plan exists, or user says "build me", "start over", "create"
- "bugfix": Short message describing broken behavior (fix, bug, crash, error, wrong)
- "mutation": Plan exists and user references existing features to change

Output ONLY valid JSON. No markdown fences, no explanation."""


class TaskParseError(RuntimeError):
    """Raised when the classifier reply cannot be decoded."""


@dataclass(slots=True)
class ParseContext:
    plan_exists: bool = False
    last_summary: str = ""
    file_list: list[str] = field(default_factory=list)
    summary_chars: int = SUMMARY_LIMIT
    max_file_list: int = FILE_LIST_LIMIT


def is_bugfix_message(message: str) -> bool:
    return bool(BUGFIX_PATTERN.search(message))


def _default_type(context: ParseContext) -> TaskType:
    return "mutation" if context.plan_exists else "fresh"


def _fallback_marker(message: str, context: ParseContext) -> ScopeMarker:
    if is_bugfix_message(message):
        return "FIX"
    return "MODIFY" if context.plan_exists else "ADD"


def _fallback_title(message: str) -> str:
    if len(message) > TITLE_LIMIT:
        return message[:TITLE_LIMIT] + "..."
    return message


def create_fallback_task(
    raw_message: str, context: ParseContext, task_number: int
) -> StructuredTask:
    task_type: TaskType = "bugfix" if is_bugfix_message(raw_message) else _default_type(context)
    return StructuredTask(
        type=task_type,
        title=_fallback_title(raw_message),
        task_number=task_number,
        requirements=[
            Requirement(marker=_fallback_marker(raw_message, context), description=raw_message)
        ],
        scope=TaskScope(),
        raw_message=raw_message,
    )


def build_parse_prompt(raw_message: str, context: ParseContext) -> str:
    lines = [f"User message: {raw_message}", f"Plan exists: {str(context.plan_exists).lower()}"]
    if context.last_summary:
        lines.append(f"Last task summary: {context.last_summary[: context.summary_chars]}")
    if context.file_list:
        lines.append(
            "Project files: " + ", ".join(context.file_list[: context.max_file_list])
        )
    return "\n".join(lines)


def decode_parse_response(content: str) -> dict[str, Any]:
    cleaned = FENCE_CLOSE.sub("", FENCE_OPEN.sub("", content.strip(), count=1)).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise TaskParseError(f"Failed to parse task JSON: {cleaned[:100]}") from exc
    if not isinstance(payload, dict):
        raise TaskParseError(f"Task JSON is not an object: {cleaned[:100]}")
    return payload


def validate_task_type(raw: Any, context: ParseContext) -> TaskType:
    if isinstance(raw, str) and raw in TASK_TYPES:
        return raw  # type: ignore[return-value]
    return _default_type(context)


def validate_requirements(raw: Any) -> list[Requirement]:
    if not isinstance(raw, list):
        return []
    requirements: list[Requirement] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        marker = item.get("marker")
        description = item.get("description")
        if not isinstance(marker, str) or not isinstance(description, str):
            continue
        if marker not in SCOPE_MARKERS:
            marker = "MODIFY"
        requirements.append(
            Requirement(marker=marker, description=description)  # type: ignore[arg-type]
        )
    return requirements


def validate_scope(raw: Any) -> TaskScope:
    if not isinstance(raw, dict):
        return TaskScope()

    def _strings(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str)]

    affected = raw.get("affectedFiles", raw.get("affected_files"))
    return TaskScope(preserve=_strings(raw.get("preserve")), affected_files=_strings(affected))


def build_structured_task(
    payload: dict[str, Any], raw_message: str, context: ParseContext, task_number: int
) -> StructuredTask:
    title = payload.get("title")
    if isinstance(title, str) and title.strip():
        title = title.strip()[:TITLE_LIMIT]
    else:
        title = raw_message[:TITLE_LIMIT]

    requirements = validate_requirements(payload.get("requirements"))
    if not requirements:
        requirements = [
            Requirement(marker=_fallback_marker(raw_message, context), description=raw_message)
        ]

    return StructuredTask(
        type=validate_task_type(payload.get("type"), context),
        title=title,
        task_number=task_number,
        requirements=requirements,
        scope=validate_scope(payload.get("scope")),
        raw_message=raw_message,
    )


async def parse_task(
    gateway: ModelGateway | None,
    raw_message: str,
    context: ParseContext,
    task_number: int,
    cancel: asyncio.Event | None = None,
) -> StructuredTask:
    """Classify a free-text message, falling back to a keyword heuristic on any failure."""
    if gateway is None:
        return create_fallback_task(raw_message, context, task_number)
    messages = [
        {"role": "system", "content": PARSE_SYSTEM_PROMPT},
        {"role": "user", "content": build_parse_prompt(raw_message, context)},
    ]
    try:
        reply = await gateway.chat(messages, None, cancel)
        payload = decode_parse_response(reply.content)
        return build_structured_task(payload, raw_message, context, task_number)
    except Exception as exc:
        logger.warning("Task classification failed, using fallback: %s", exc)
        return create_fallback_task(raw_message, context, task_number)
