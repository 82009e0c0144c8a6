"""Heuristics derived from paths, timestamps and message text.

All of these are approximate display hints. They take plain values and return
plain values so they can be swapped without touching the data model.
"""
from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from agent_hq import config
from agent_hq.date_utils import seconds_since
from agent_hq.models import AgentStatus, AgentType, Message, SessionStatus

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_AGENT_FILE_PREFIX = "agent-"

# Checked in order; first hit wins.
_AGENT_TYPE_KEYWORDS: list[tuple[AgentType, tuple[str, ...]]] = [
    ("explore", ("explore", "codebase")),
    ("plan", ("plan", "implementation")),
    ("bash", ("bash", "command")),
]

_AGENT_DISPLAY_NAMES: dict[str, str] = {
    "main": "Main Agent",
    "explore": "Explorer",
    "plan": "Planner",
    "bash": "Bash Runner",
    "general-purpose": "Worker",
    "unknown": "Agent",
}


def is_valid_uuid(value: str) -> bool:
    return bool(_UUID_PATTERN.match(value or ""))


def agent_id_from_path(path: Path) -> Optional[str]:
    """``agent-<id>.jsonl`` -> ``<id>``."""
    stem = path.stem
    if stem.startswith(_AGENT_FILE_PREFIX) and len(stem) > len(_AGENT_FILE_PREFIX):
        return stem[len(_AGENT_FILE_PREFIX):]
    return None


def resolve_session_id(path: Path) -> Optional[str]:
    """Session id for a transcript path, or None if the path is not one.

    Primary transcripts are named ``<session-uuid>.jsonl``. Subagent transcripts
    live at ``<session-uuid>/subagents/agent-<id>.jsonl``.
    """
    if path.suffix != config.TRANSCRIPT_SUFFIX:
        return None
    if is_valid_uuid(path.stem):
        return path.stem
    if agent_id_from_path(path) is not None:
        grandparent = path.parent.parent.name
        if is_valid_uuid(grandparent):
            return grandparent
    return None


def decode_workspace_path(encoded: str) -> Optional[str]:
    """Reverse the separator substitution in an encoded workspace dir name.

    ``-Users-dev-myapp`` -> ``/Users/dev/myapp``. Lossy when the original path
    contained ``-`` itself; that ambiguity is accepted.
    """
    if not encoded.startswith("-"):
        return None
    return encoded.replace("-", "/")


def decode_workspace_name(encoded: str) -> str:
    decoded = decode_workspace_path(encoded)
    if decoded is None:
        return encoded
    parts = [part for part in decoded.split("/") if part]
    return parts[-1] if parts else encoded


def infer_session_status(last_modified: datetime, now: Optional[datetime] = None) -> SessionStatus:
    elapsed = seconds_since(last_modified, now)
    if elapsed < config.ACTIVE_WINDOW_SECONDS:
        return "active"
    if elapsed < config.IDLE_WINDOW_SECONDS:
        return "idle"
    return "completed"


def infer_agent_status(last_modified: datetime, now: Optional[datetime] = None) -> AgentStatus:
    session_status = infer_session_status(last_modified, now)
    if session_status == "active":
        return "working"
    if session_status == "idle":
        return "idle"
    return "completed"


def infer_agent_type(messages: list[Message]) -> AgentType:
    """Keyword match over the lowercased text of the first message."""
    if not messages:
        return "unknown"
    text = messages[0].text().lower()
    for agent_type, keywords in _AGENT_TYPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return agent_type
    return "general-purpose"


def agent_display_name(agent_type: str) -> str:
    return _AGENT_DISPLAY_NAMES.get(agent_type, "Agent")
