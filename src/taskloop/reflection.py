"""Post-task survey asking the model how working in the harness went.

Capture is strictly best-effort: any failure is logged and swallowed so a
finished task is never turned into a failed one by its own feedback survey.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from taskloop.backends.base import ModelGateway
from taskloop.gaps import CommandAttempt
from taskloop.gates import RuntimeErrorRecord
from taskloop.state.store import KeyValueStore

logger = logging.getLogger(__name__)

REFLECTION_SYSTEM_PROMPT = (
    "You are analyzing your experience with a coding harness. Respond with valid JSON only."
)

DEFAULT_DIFFICULTY: dict[str, int] = {
    "overall": 3,
    "finding_commands": 3,
    "file_operations": 3,
    "debugging": 3,
}


@dataclass(slots=True)
class FrictionPoint:
    command: str
    expected: str = ""
    actual: str = ""
    suggestion: str = ""


@dataclass(slots=True)
class HarnessReflection:
    task_id: str
    timestamp: str
    difficulty: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_DIFFICULTY))
    friction: list[FrictionPoint] = field(default_factory=list)
    wished_for: list[str] = field(default_factory=list)
    confusing_parts: list[str] = field(default_factory=list)
    workarounds: list[str] = field(default_factory=list)
    runtime_errors: list[str] = field(default_factory=list)
    would_recommend: bool = True
    one_sentence_summary: str = ""
    freeform_comments: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "timestamp": self.timestamp,
            "difficulty": dict(self.difficulty),
            "friction": [
                {
                    "command": item.command,
                    "expected": item.expected,
                    "actual": item.actual,
                    "suggestion": item.suggestion,
                }
                for item in self.friction
            ],
            "wished_for": list(self.wished_for),
            "confusing_parts": list(self.confusing_parts),
            "workarounds": list(self.workarounds),
            "runtime_errors": list(self.runtime_errors),
            "would_recommend": self.would_recommend,
            "one_sentence_summary": self.one_sentence_summary,
            "freeform_comments": self.freeform_comments,
        }


@dataclass(slots=True)
class ReflectionSummary:
    total_tasks: int = 0
    avg_difficulty: float = 0.0
    top_wished_for: list[str] = field(default_factory=list)
    top_friction: list[str] = field(default_factory=list)
    total_runtime_errors: int = 0
    recommend_rate: int = 0


def strip_code_fences(text: str) -> str:
    clean = text.strip()
    if clean.startswith("```json"):
        clean = clean[7:]
    elif clean.startswith("```"):
        clean = clean[3:]
    if clean.endswith("```"):
        clean = clean[:-3]
    return clean.strip()


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _difficulty(value: Any) -> dict[str, int]:
    difficulty = dict(DEFAULT_DIFFICULTY)
    if not isinstance(value, dict):
        return difficulty
    aliases = {
        "overall": ("overall",),
        "finding_commands": ("finding_commands", "findingCommands"),
        "file_operations": ("file_operations", "fileOperations"),
        "debugging": ("debugging",),
    }
    for key, names in aliases.items():
        for name in names:
            raw = value.get(name)
            if isinstance(raw, (int, float)) and not isinstance(raw, bool):
                difficulty[key] = max(1, min(5, int(raw)))
                break
    return difficulty


def _pick(payload: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in payload:
            return payload[name]
    return None


def _line_label(line: int | None) -> str:
    return "?" if line is None else str(line)


def build_reflection_prompt(
    task_description: str,
    attempts: list[CommandAttempt],
    runtime_errors: list[RuntimeErrorRecord],
    task_id: str,
) -> str:
    failed = "\n".join(
        f"- {attempt.command} {' '.join(attempt.args)}: {attempt.error or ''}".rstrip()
        for attempt in attempts
        if not attempt.success
    )
    succeeded = "\n".join(
        f"- {attempt.command} {' '.join(attempt.args)}".rstrip()
        for attempt in attempts
        if attempt.success
    )
    runtime_section = ""
    if runtime_errors:
        runtime_section = "\n**Runtime errors encountered:**\n" + "\n".join(
            f"- {error.message} at {error.filename or '?'}:{_line_label(error.line)}"
            for error in runtime_errors
        )

    return f"""## Harness Reflection Survey

You just completed a task in this harness. Please reflect on your experience.

**Task:** {task_description}
**Task ID:** {task_id}

**Commands you used successfully:**
{succeeded or "(none)"}

**Commands that failed:**
{failed or "(none)"}
{runtime_section}

Please respond with a JSON object (no markdown, just raw JSON) with this structure:

{{
  "difficulty": {{
    "overall": <1-5>,
    "finding_commands": <1-5>,
    "file_operations": <1-5>,
    "debugging": <1-5>
  }},
  "friction": [
    {{
      "command": "<command that caused friction>",
      "expected": "<what you expected>",
      "actual": "<what happened>",
      "suggestion": "<how to improve>"
    }}
  ],
  "wished_for": ["<command or feature you wished existed>"],
  "confusing_parts": ["<what was unclear>"],
  "workarounds": ["<hacks you had to use>"],
  "would_recommend": <true/false>,
  "one_sentence_summary": "<your experience in one sentence>",
  "freeform_comments": "<anything else you want to share>"
}}

Be honest and specific. This feedback improves the harness for future tasks.""".strip()


def parse_reflection_response(
    response: str,
    task_id: str,
    runtime_errors: list[RuntimeErrorRecord],
) -> HarnessReflection | None:
    try:
        payload = json.loads(strip_code_fences(response))
    except json.JSONDecodeError as exc:
        logger.warning("Reflection response is not valid JSON: %s", exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("Reflection response is not a JSON object")
        return None

    friction: list[FrictionPoint] = []
    raw_friction = payload.get("friction")
    if isinstance(raw_friction, list):
        for item in raw_friction:
            if not isinstance(item, dict) or not isinstance(item.get("command"), str):
                continue
            friction.append(
                FrictionPoint(
                    command=item["command"],
                    expected=str(item.get("expected", "")),
                    actual=str(item.get("actual", "")),
                    suggestion=str(item.get("suggestion", "")),
                )
            )

    recommend = _pick(payload, "would_recommend", "wouldRecommend")
    summary = _pick(payload, "one_sentence_summary", "oneSentenceSummary")
    comments = _pick(payload, "freeform_comments", "freeformComments")
    return HarnessReflection(
        task_id=task_id,
        timestamp=datetime.now(UTC).replace(microsecond=0).isoformat(),
        difficulty=_difficulty(payload.get("difficulty")),
        friction=friction,
        wished_for=_string_list(_pick(payload, "wished_for", "wishedFor")),
        confusing_parts=_string_list(_pick(payload, "confusing_parts", "confusingParts")),
        workarounds=_string_list(payload.get("workarounds")),
        runtime_errors=[error.message for error in runtime_errors],
        would_recommend=recommend if isinstance(recommend, bool) else True,
        one_sentence_summary=summary if isinstance(summary, str) else "",
        freeform_comments=comments if isinstance(comments, str) else "",
    )


def save_reflection(store: KeyValueStore, reflection: HarnessReflection) -> None:
    store.append("reflections", json.dumps(reflection.to_dict(), ensure_ascii=False) + "\n")


def load_reflections(store: KeyValueStore) -> list[HarnessReflection]:
    result = store.read("reflections")
    if not result.ok:
        return []
    reflections: list[HarnessReflection] = []
    for line in result.value.splitlines():
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed reflection record: %s", line[:120])
            continue
        if not isinstance(payload, dict):
            continue
        reflection = HarnessReflection(
            task_id=str(payload.get("task_id", "")),
            timestamp=str(payload.get("timestamp", "")),
            difficulty=_difficulty(payload.get("difficulty")),
            friction=[
                FrictionPoint(
                    command=str(item.get("command", "")),
                    expected=str(item.get("expected", "")),
                    actual=str(item.get("actual", "")),
                    suggestion=str(item.get("suggestion", "")),
                )
                for item in payload.get("friction", [])
                if isinstance(item, dict)
            ],
            wished_for=_string_list(payload.get("wished_for")),
            confusing_parts=_string_list(payload.get("confusing_parts")),
            workarounds=_string_list(payload.get("workarounds")),
            runtime_errors=_string_list(payload.get("runtime_errors")),
            would_recommend=bool(payload.get("would_recommend", True)),
            one_sentence_summary=str(payload.get("one_sentence_summary", "")),
            freeform_comments=str(payload.get("freeform_comments", "")),
        )
        reflections.append(reflection)
    return reflections


def summarize_reflections(reflections: list[HarnessReflection]) -> ReflectionSummary:
    if not reflections:
        return ReflectionSummary()
    total = len(reflections)
    avg_difficulty = sum(item.difficulty.get("overall", 3) for item in reflections) / total
    wished = Counter(wish for item in reflections for wish in item.wished_for)
    friction = Counter(point.command for item in reflections for point in item.friction)
    recommend = sum(1 for item in reflections if item.would_recommend) / total
    return ReflectionSummary(
        total_tasks=total,
        avg_difficulty=round(avg_difficulty, 1),
        top_wished_for=[wish for wish, _ in wished.most_common(5)],
        top_friction=[command for command, _ in friction.most_common(5)],
        total_runtime_errors=sum(len(item.runtime_errors) for item in reflections),
        recommend_rate=round(recommend * 100),
    )


async def capture_reflection(
    gateway: ModelGateway,
    store: KeyValueStore,
    *,
    task_description: str,
    task_id: str,
    attempts: list[CommandAttempt],
    runtime_errors: list[RuntimeErrorRecord],
    cancel: asyncio.Event | None = None,
) -> HarnessReflection | None:
    prompt = build_reflection_prompt(task_description, attempts, runtime_errors, task_id)
    try:
        reply = await gateway.chat(
            [
                {"role": "system", "content": REFLECTION_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            [],
            cancel,
        )
        reflection = parse_reflection_response(reply.content, task_id, runtime_errors)
        if reflection is None:
            return None
        save_reflection(store, reflection)
    except Exception as exc:
        logger.warning("Reflection capture failed for %s: %s", task_id, exc)
        return None
    logger.info("Reflection captured for %s", task_id)
    return reflection
