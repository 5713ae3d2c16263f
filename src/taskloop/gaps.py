"""Capability-gap tracking for commands the model expected to exist."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from taskloop.state.store import KeyValueStore, StateStoreError
from taskloop.tools import NOT_FOUND_EXIT_CODE

logger = logging.getLogger(__name__)

NOT_FOUND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"command not found", re.IGNORECASE),
    re.compile(r"unknown command", re.IGNORECASE),
    re.compile(r"not recognized as.*command", re.IGNORECASE),
    re.compile(r"no such command", re.IGNORECASE),
    re.compile(r":\s*not found\s*$", re.MULTILINE),
)


def _now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class CommandAttempt:
    command: str
    args: list[str]
    success: bool
    error: str | None = None
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "args": list(self.args),
            "success": self.success,
            "error": self.error,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class GapRecord:
    command: str
    args: list[str]
    error: str
    context: str
    task_id: str
    reasoning: str = ""
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "args": list(self.args),
            "error": self.error,
            "context": self.context,
            "reasoning": self.reasoning,
            "task_id": self.task_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GapRecord:
        args = data.get("args", [])
        return cls(
            command=str(data.get("command", "")),
            args=[str(item) for item in args] if isinstance(args, list) else [],
            error=str(data.get("error", "")),
            context=str(data.get("context", "")),
            task_id=str(data.get("task_id", "")),
            reasoning=str(data.get("reasoning") or ""),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass(slots=True)
class GapAggregate:
    command: str
    count: int
    contexts: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    last_seen: str = ""


def is_command_not_found(exit_code: int, stderr: str) -> bool:
    if exit_code != NOT_FOUND_EXIT_CODE:
        return False
    return any(pattern.search(stderr) for pattern in NOT_FOUND_PATTERNS)


def parse_command_string(command_text: str) -> tuple[str, list[str]]:
    parts = command_text.split()
    if not parts:
        return "", []
    return parts[0], parts[1:]


def record_gap(store: KeyValueStore, gap: GapRecord) -> bool:
    try:
        store.append("gaps", json.dumps(gap.to_dict(), ensure_ascii=False) + "\n")
    except StateStoreError as exc:
        logger.warning("Recording gap for %s failed: %s", gap.command, exc)
        return False
    return True


def load_gaps(store: KeyValueStore) -> list[GapRecord]:
    result = store.read("gaps")
    if not result.ok:
        return []
    records: list[GapRecord] = []
    for line in result.value.splitlines():
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed gap record: %s", line[:120])
            continue
        if isinstance(payload, dict):
            records.append(GapRecord.from_dict(payload))
    return records


def aggregate_gaps(gaps: list[GapRecord]) -> list[GapAggregate]:
    by_command: dict[str, GapAggregate] = {}
    for gap in gaps:
        existing = by_command.get(gap.command)
        if existing is None:
            by_command[gap.command] = GapAggregate(
                command=gap.command,
                count=1,
                contexts=[gap.context],
                reasoning=[gap.reasoning] if gap.reasoning else [],
                last_seen=gap.timestamp,
            )
            continue
        existing.count += 1
        if gap.context not in existing.contexts:
            existing.contexts.append(gap.context)
        if gap.reasoning and gap.reasoning not in existing.reasoning:
            existing.reasoning.append(gap.reasoning)
        existing.last_seen = max(existing.last_seen, gap.timestamp)
    return sorted(by_command.values(), key=lambda item: item.count, reverse=True)


def format_gaps_report(aggregates: list[GapAggregate]) -> str:
    if not aggregates:
        return "No command gaps recorded."
    blocks: list[str] = []
    for aggregate in aggregates:
        lines = [
            f"{aggregate.command} ({aggregate.count}x)",
            f"  Contexts: {', '.join(aggregate.contexts[:5])}",
        ]
        if aggregate.reasoning:
            lines.append(f"  Reasoning: {'; '.join(aggregate.reasoning[:3])}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def clear_gaps(store: KeyValueStore) -> None:
    store.delete("gaps")
