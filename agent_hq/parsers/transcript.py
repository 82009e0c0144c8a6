"""Parse JSONL session transcripts into Message models.

The parser is stateless apart from the caller-supplied starting line, so the
same code serves full-file reads during discovery and incremental reads while
tailing. Lines are counted as consumed only once they are complete: a trailing
line without a newline that does not yet decode is left for the next read.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from pydantic import TypeAdapter, ValidationError

from agent_hq.date_utils import parse_timestamp
from agent_hq.models import (
    ContentBlock,
    Message,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from agent_hq.observability import record_parser_failure

logger = logging.getLogger("agent_hq.parser")

MESSAGE_RECORD_TYPES = {"user", "assistant"}
QUEUE_OPERATION_TYPE = "queue-operation"

_BLOCK_TYPES = {"text", "tool_use", "tool_result"}
_BLOCK_ADAPTER: TypeAdapter[ContentBlock] = TypeAdapter(ContentBlock)


@dataclass
class ParseStats:
    """Mutable counters filled in while a transcript is iterated."""

    last_line: int = 0
    malformed_lines: int = 0
    cwd: Optional[str] = None


@dataclass
class TranscriptBatch:
    messages: list[Message] = field(default_factory=list)
    last_line: int = 0
    size: int = 0
    malformed_lines: int = 0
    cwd: Optional[str] = None


def normalize_content(content: Any) -> list[ContentBlock]:
    """Normalize ``message.content`` into a list of typed blocks.

    Accepts a bare string, an array, a single object, or nothing. Array items
    of unrecognized block types (thinking, images) are dropped.
    """
    if not content:
        return []
    if isinstance(content, str):
        return [TextBlock(text=content)]
    if isinstance(content, dict):
        items: list[Any] = [content]
    elif isinstance(content, list):
        items = content
    else:
        return []

    blocks: list[ContentBlock] = []
    for item in items:
        if isinstance(item, str):
            blocks.append(TextBlock(text=item))
            continue
        if not isinstance(item, dict) or item.get("type") not in _BLOCK_TYPES:
            continue
        try:
            blocks.append(_BLOCK_ADAPTER.validate_python(item))
        except ValidationError as exc:
            logger.debug("Dropping invalid %s block: %s", item.get("type"), exc)
    return blocks


def _coerce_usage(raw: Any) -> Optional[TokenUsage]:
    if not isinstance(raw, dict):
        return None
    values = {key: value for key, value in raw.items() if isinstance(value, int) and not isinstance(value, bool)}
    return TokenUsage.model_validate(values)


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def parse_record(
    raw: dict[str, Any],
    *,
    session_id: str = "",
    agent_id: Optional[str] = None,
) -> Optional[Message]:
    """Map one decoded record to a Message, or None if it is not a message."""
    record_type = raw.get("type")
    if record_type == QUEUE_OPERATION_TYPE or record_type not in MESSAGE_RECORD_TYPES:
        return None

    payload = raw.get("message")
    if not isinstance(payload, dict):
        payload = {}

    return Message(
        uuid=_optional_str(raw.get("uuid")) or str(uuid.uuid4()),
        parentUuid=_optional_str(raw.get("parentUuid")),
        sessionId=_optional_str(raw.get("sessionId")) or session_id,
        agentId=_optional_str(raw.get("agentId")) or agent_id,
        role=record_type,
        content=normalize_content(payload.get("content")),
        timestamp=parse_timestamp(raw.get("timestamp")),
        isSidechain=bool(raw.get("isSidechain")),
        model=_optional_str(payload.get("model")),
        usage=_coerce_usage(payload.get("usage")),
    )


def iter_messages(
    lines: Iterable[str],
    start_line: int = 0,
    *,
    session_id: str = "",
    agent_id: Optional[str] = None,
    stats: Optional[ParseStats] = None,
) -> Iterator[Message]:
    """Lazily yield messages from ``lines`` past ``start_line`` (1-based count).

    ``stats.last_line`` ends at the last fully consumed line.
    """
    stats = stats if stats is not None else ParseStats()
    stats.last_line = max(stats.last_line, start_line)

    for line_number, line in enumerate(lines, start=1):
        if line_number <= start_line:
            continue
        complete = line.endswith("\n")
        stripped = line.strip()
        if not stripped:
            if complete:
                stats.last_line = line_number
            continue

        try:
            raw = json.loads(stripped)
        except ValueError:
            if not complete:
                break
            stats.malformed_lines += 1
            stats.last_line = line_number
            logger.debug("Skipping malformed JSONL line %d", line_number)
            continue

        stats.last_line = line_number
        if not isinstance(raw, dict):
            stats.malformed_lines += 1
            continue
        if stats.cwd is None and isinstance(raw.get("cwd"), str) and raw["cwd"].strip():
            stats.cwd = raw["cwd"]

        try:
            message = parse_record(raw, session_id=session_id, agent_id=agent_id)
        except ValidationError as exc:
            stats.malformed_lines += 1
            logger.debug("Skipping invalid record on line %d: %s", line_number, exc)
            continue
        if message is not None:
            yield message


def read_transcript(
    path: Path,
    start_line: int = 0,
    *,
    session_id: str = "",
    agent_id: Optional[str] = None,
) -> TranscriptBatch:
    """Read ``path`` from ``start_line`` and collect the parsed messages."""
    stats = ParseStats()
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        messages = list(
            iter_messages(handle, start_line, session_id=session_id, agent_id=agent_id, stats=stats)
        )
        size = path.stat().st_size

    if stats.malformed_lines:
        logger.warning(f"Skipped {stats.malformed_lines} malformed line(s) in {path}")
        record_parser_failure("transcript", stats.malformed_lines)

    return TranscriptBatch(
        messages=messages,
        last_line=stats.last_line,
        size=size,
        malformed_lines=stats.malformed_lines,
        cwd=stats.cwd,
    )


# ── Controller stdout records ───────────────────────────────────────

class JsonLineBuffer:
    """Accumulate stream chunks and hand back complete decoded JSON objects."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[dict[str, Any]]:
        self._pending += chunk
        *complete, self._pending = self._pending.split("\n")
        return [record for record in map(_decode_object, complete) if record is not None]

    def flush(self) -> list[dict[str, Any]]:
        remainder, self._pending = self._pending, ""
        record = _decode_object(remainder)
        return [record] if record is not None else []


def _decode_object(line: str) -> Optional[dict[str, Any]]:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        raw = json.loads(stripped)
    except ValueError:
        return None
    return raw if isinstance(raw, dict) else None


def classify_stream_record(raw: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
    """Map one stdout record to (kind, payload) structured-output pairs."""
    record_type = raw.get("type")
    if record_type == "tool_use":
        return [("tool-use", raw)]
    if record_type == "tool_result":
        return [("tool-result", raw)]
    if record_type not in MESSAGE_RECORD_TYPES:
        return []

    payload = raw.get("message")
    blocks = normalize_content(payload.get("content") if isinstance(payload, dict) else None)
    results: list[tuple[str, dict[str, Any]]] = []
    if record_type == "assistant":
        results.append(("assistant-message", raw))
        results.extend(
            ("tool-use", block.model_dump()) for block in blocks if isinstance(block, ToolUseBlock)
        )
    else:
        results.extend(
            ("tool-result", block.model_dump()) for block in blocks if isinstance(block, ToolResultBlock)
        )
    return results
