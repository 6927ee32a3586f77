"""NDJSON event stream for machine consumers of a run."""

from __future__ import annotations

import json
import logging
import sys
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

logger = logging.getLogger(__name__)

PROMPT_PREVIEW_CHARS = 240


def prompt_preview(text: str, limit: int = PROMPT_PREVIEW_CHARS) -> str:
    normalized = " ".join((text or "").split())
    if len(normalized) <= limit:
        return normalized
    return normalized[:limit] + "..."


def sanitize_tool_args(name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce tool arguments to what is safe and small enough to emit."""
    out: Dict[str, Any] = {}
    if name == "execute_agent":
        for key in ("agent", "project_name", "parent_branch_id"):
            if isinstance(args.get(key), str) and args[key].strip():
                out[key] = args[key].strip()
        prompt = args.get("prompt")
        if isinstance(prompt, str) and prompt:
            out["prompt_preview"] = prompt_preview(prompt)
            if out["prompt_preview"] != prompt.strip():
                out["prompt_truncated"] = True
        return out
    for key, value in args.items():
        if isinstance(value, str):
            out[key] = prompt_preview(value)
        elif isinstance(value, (bool, int, float)):
            out[key] = value
    return out


class EventStream:
    """Emits one JSON object per line.

    Sequence numbers and item ids belong to the stream instance, so each run
    gets its own counters. Emission is safe from concurrent verification tasks.
    """

    def __init__(self, writer: Optional[TextIO] = None, *, enabled: bool = True) -> None:
        self._writer = writer or sys.stdout
        self._enabled = enabled
        self._lock = threading.Lock()
        self._sequence = 0
        self._next_item = 0
        self.thread_id = str(uuid.uuid4())

    @property
    def enabled(self) -> bool:
        return self._enabled

    def emit(self, event_type: str, **payload: Any) -> None:
        if not self._enabled or not event_type:
            return
        with self._lock:
            self._sequence += 1
            event: Dict[str, Any] = {
                "type": event_type,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "sequence": self._sequence,
                "thread_id": self.thread_id,
            }
            event.update({k: v for k, v in payload.items() if v is not None})
            try:
                self._writer.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")
                self._writer.flush()
            except (OSError, ValueError, TypeError) as exc:
                logger.error("failed to write stream event %r: %s", event_type, exc)

    def thread_started(self, task: str, project_name: str, parent_branch_id: str) -> None:
        self.emit(
            "thread.started",
            task=prompt_preview(task),
            project_name=project_name,
            parent_branch_id=parent_branch_id,
        )

    def thread_completed(self, status: str, summary: str, report: Optional[Dict[str, Any]] = None) -> None:
        self.emit("thread.completed", status=status, summary=summary, report=report)

    def turn_started(self, turn_id: str, iteration: int, message_count: int, tool_count: int) -> None:
        self.emit(
            "turn.started",
            turn_id=turn_id,
            iteration=iteration,
            message_count=message_count,
            tool_calls_so_far=tool_count,
        )

    def assistant_message(self, turn_id: str, content: str, tool_calls: int) -> None:
        self.emit(
            "assistant.message",
            turn_id=turn_id,
            preview=prompt_preview(content) if content else None,
            tool_calls=tool_calls,
        )

    def turn_completed(self, turn_id: str, iteration: int, tool_calls: int, has_final: bool) -> None:
        self.emit(
            "turn.completed",
            turn_id=turn_id,
            iteration=iteration,
            tool_calls=tool_calls,
            has_final_report=has_final,
        )

    def item_started(self, kind: str, name: str, args: Dict[str, Any]) -> str:
        with self._lock:
            self._next_item += 1
            item_id = f"item_{self._next_item}"
        self.emit("item.started", item_id=item_id, kind=kind, name=name, arguments=args)
        return item_id

    def item_completed(
        self,
        item_id: str,
        status: str,
        duration_seconds: float,
        branch_id: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> None:
        if not item_id:
            return
        self.emit(
            "item.completed",
            item_id=item_id,
            status=status,
            duration_ms=int(duration_seconds * 1000),
            branch_id=branch_id or None,
            summary=prompt_preview(summary) if summary else None,
        )

    def error(self, scope: str, message: str, **extra: Any) -> None:
        self.emit("error", scope=scope, message=message, **extra)
