"""In-memory session repository built from a full scan of transcript files.

The repository owns the Session/Agent aggregates. After the initial scan it is
kept current by the events the tailer and the process controller emit, so a
single message stream converges regardless of which writer produced it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from agent_hq import config
from agent_hq.date_utils import file_times, seconds_since, utc_now
from agent_hq.errors import SessionNotFoundError
from agent_hq.events import (
    DomainEvent,
    NewMessage,
    SessionSnapshotUpdated,
    SessionStatusChanged,
)
from agent_hq.models import MAIN_AGENT_ID, Agent, Message, Session, SessionStatus
from agent_hq.parsers.inference import (
    agent_display_name,
    agent_id_from_path,
    decode_workspace_name,
    decode_workspace_path,
    infer_agent_status,
    infer_agent_type,
    infer_session_status,
    is_valid_uuid,
)
from agent_hq.parsers.transcript import read_transcript

logger = logging.getLogger("agent_hq.repository")

_SUMMARY_MAX_CHARS = 160

# (last consumed line, byte size) per transcript file
FileOffset = tuple[int, int]


@dataclass
class _ScannedSession:
    session: Session
    modified_at: datetime
    message_ids: set[str] = field(default_factory=set)
    offsets: dict[Path, FileOffset] = field(default_factory=dict)


def _summarize(messages: list[Message]) -> Optional[str]:
    for message in messages:
        if message.role != "user":
            continue
        text = " ".join(message.text().split())
        if text:
            return text if len(text) <= _SUMMARY_MAX_CHARS else text[: _SUMMARY_MAX_CHARS - 1] + "…"
    return None


def _token_totals(messages: list[Message]) -> tuple[int, int]:
    tokens_in = tokens_out = 0
    for message in messages:
        if message.usage is None:
            continue
        tokens_in += message.usage.input_tokens
        tokens_out += message.usage.output_tokens
    return tokens_in, tokens_out


def _latest_model(messages: list[Message]) -> Optional[str]:
    for message in reversed(messages):
        if message.role == "assistant" and message.model:
            return message.model
    return None


def _primary_transcript_for(path: Path, session_id: str) -> Path:
    """Map a subagent transcript path back to its session's primary transcript."""
    if path.stem == session_id:
        return path
    # <workspace>/<session>/subagents/agent-<id>.jsonl
    return path.parent.parent.parent / f"{session_id}{config.TRANSCRIPT_SUFFIX}"


class SessionRepository:
    """Discovers sessions under ``<claude_home>/projects`` and serves queries."""

    def __init__(
        self,
        claude_home: Path | None = None,
        summary_limit: int | None = None,
    ):
        self.claude_home = Path(claude_home or config.CLAUDE_HOME)
        self.summary_limit = summary_limit if summary_limit is not None else config.SUMMARY_MESSAGE_LIMIT
        self._sessions: dict[str, Session] = {}
        self._modified_at: dict[str, datetime] = {}
        self._message_ids: dict[str, set[str]] = {}
        self._offsets: dict[Path, FileOffset] = {}
        self._status_overrides: dict[str, tuple[SessionStatus, datetime]] = {}
        self._controlled: set[str] = set()

    @property
    def projects_dir(self) -> Path:
        return self.claude_home / config.PROJECTS_DIRNAME

    # ── Discovery ───────────────────────────────────────────────────

    async def discover(self) -> list[Session]:
        """Full scan of every workspace. Replaces previously held aggregates."""
        scanned = await asyncio.to_thread(self._scan)
        for item in scanned:
            self._store(item)
        logger.info(f"Discovered {len(scanned)} sessions under {self.projects_dir}")
        return self.list_sessions()

    def _scan(self) -> list[_ScannedSession]:
        results: list[_ScannedSession] = []
        if not self.projects_dir.is_dir():
            logger.info("Claude projects directory not found: %s", self.projects_dir)
            return results

        now = utc_now()
        for workspace_dir in sorted(self.projects_dir.iterdir()):
            if not workspace_dir.is_dir():
                continue
            for path in sorted(workspace_dir.glob(f"*{config.TRANSCRIPT_SUFFIX}")):
                if not path.is_file() or not is_valid_uuid(path.stem):
                    continue
                try:
                    results.append(self.load_session(path, now=now))
                except Exception:
                    logger.exception("Error parsing session %s", path.stem)
        return results

    def load_session(self, path: Path, now: datetime | None = None) -> _ScannedSession:
        """Parse one primary transcript and its subagents into a Session."""
        now = now or utc_now()
        session_id = path.stem
        workspace_dir = path.parent.name

        batch = read_transcript(path, session_id=session_id)
        messages = batch.messages
        created, modified = file_times(path)
        offsets: dict[Path, FileOffset] = {path: (batch.last_line, batch.size)}

        main_agent = Agent(
            id=MAIN_AGENT_ID,
            sessionId=session_id,
            name=agent_display_name("main"),
            type="main",
            status=infer_agent_status(modified, now),
            messageCount=len(messages),
            lastActivity=modified,
            filePath=str(path),
        )
        agents = [main_agent]
        for agent, agent_path, offset in self._discover_agents(session_id, path, now):
            agents.append(agent)
            offsets[agent_path] = offset

        tokens_in, tokens_out = _token_totals(messages)
        session = Session(
            id=session_id,
            workspaceId=workspace_dir,
            workspaceName=decode_workspace_name(workspace_dir),
            filePath=str(path),
            status=infer_session_status(modified, now),
            agents=agents,
            messages=messages[-self.summary_limit:] if self.summary_limit > 0 else [],
            createdAt=messages[0].timestamp if messages else created,
            lastMessageAt=messages[-1].timestamp if messages else modified,
            workingDirectory=batch.cwd or decode_workspace_path(workspace_dir),
            summary=_summarize(messages),
            model=_latest_model(messages),
            messageCount=len(messages),
            tokensIn=tokens_in,
            tokensOut=tokens_out,
        )
        return _ScannedSession(
            session=session,
            modified_at=modified,
            message_ids={message.uuid for message in messages},
            offsets=offsets,
        )

    def _discover_agents(
        self, session_id: str, session_path: Path, now: datetime
    ) -> list[tuple[Agent, Path, FileOffset]]:
        subagents_dir = session_path.parent / session_id / config.SUBAGENTS_DIRNAME
        if not subagents_dir.is_dir():
            return []

        found: list[tuple[Agent, Path, FileOffset]] = []
        for agent_path in sorted(subagents_dir.glob(f"agent-*{config.TRANSCRIPT_SUFFIX}")):
            try:
                found.append(self._load_agent(session_id, agent_path, now))
            except OSError as exc:
                logger.error(f"Error parsing agent file {agent_path}: {exc}")
        return found

    def _load_agent(self, session_id: str, agent_path: Path, now: datetime) -> tuple[Agent, Path, FileOffset]:
        agent_id = agent_id_from_path(agent_path) or agent_path.stem
        batch = read_transcript(agent_path, session_id=session_id, agent_id=agent_id)
        _, modified = file_times(agent_path)
        agent_type = infer_agent_type(batch.messages)
        agent = Agent(
            id=agent_id,
            sessionId=session_id,
            name=agent_display_name(agent_type),
            type=agent_type,
            status=infer_agent_status(modified, now),
            messageCount=len(batch.messages),
            lastActivity=modified,
            filePath=str(agent_path),
        )
        return agent, agent_path, (batch.last_line, batch.size)

    def _store(self, scanned: _ScannedSession) -> None:
        session = scanned.session
        session.isControlled = session.id in self._controlled
        self._sessions[session.id] = session
        self._modified_at[session.id] = scanned.modified_at
        self._message_ids[session.id] = scanned.message_ids
        self._offsets.update(scanned.offsets)
        session.status = self._effective_status(session.id)

    # ── Queries ─────────────────────────────────────────────────────

    def list_sessions(self) -> list[Session]:
        now = utc_now()
        sessions = list(self._sessions.values())
        for session in sessions:
            self._refresh_status(session, now)
        sessions.sort(key=lambda s: s.lastMessageAt, reverse=True)
        return sessions

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        self._refresh_status(session, utc_now())
        return session

    async def get_messages(self, session_id: str) -> list[Message]:
        """Full transcript of a discovered session, in file order."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        batch = await asyncio.to_thread(read_transcript, Path(session.filePath), session_id=session_id)
        return batch.messages

    def known_offsets(self) -> dict[Path, FileOffset]:
        """Per-file (line, size) positions observed by the last scan."""
        return dict(self._offsets)

    # ── Status ──────────────────────────────────────────────────────

    def _effective_status(self, session_id: str, now: datetime | None = None) -> SessionStatus:
        override = self._status_overrides.get(session_id)
        if override is not None:
            return override[0]
        modified = self._modified_at.get(session_id)
        if modified is None:
            return "idle"
        return infer_session_status(modified, now)

    def _refresh_status(self, session: Session, now: datetime) -> None:
        session.status = self._effective_status(session.id, now)
        for agent in session.agents:
            agent.status = infer_agent_status(agent.lastActivity, now)

    def apply_status(self, session_id: str, status: SessionStatus) -> None:
        """Controller status wins over the time-based inference."""
        self._status_overrides[session_id] = (status, utc_now())
        self.set_controlled(session_id, status == "active")
        session = self._sessions.get(session_id)
        if session is not None:
            session.status = status

    def set_controlled(self, session_id: str, controlled: bool) -> None:
        if controlled:
            self._controlled.add(session_id)
        else:
            self._controlled.discard(session_id)
        session = self._sessions.get(session_id)
        if session is not None:
            session.isControlled = controlled

    def _expire_exit_override(self, session_id: str) -> None:
        # A terminal override is dropped once writes keep arriving after the
        # active window, which means another writer picked the session up.
        override = self._status_overrides.get(session_id)
        if override is None or override[0] == "active" or session_id in self._controlled:
            return
        if seconds_since(override[1]) > config.ACTIVE_WINDOW_SECONDS:
            del self._status_overrides[session_id]

    # ── Event application ───────────────────────────────────────────

    def handle_event(self, event: DomainEvent) -> None:
        if isinstance(event, NewMessage):
            self.apply_new_message(event.sessionId, event.message, source_agent_id=event.agentId)
        elif isinstance(event, SessionSnapshotUpdated):
            self.apply_snapshot(event)
        elif isinstance(event, SessionStatusChanged):
            self.apply_status(event.sessionId, event.status)

    def apply_new_message(
        self,
        session_id: str,
        message: Message,
        source_agent_id: Optional[str] = None,
    ) -> bool:
        """Append one tailed message. Returns False if it was not applied.

        ``source_agent_id`` is the subagent whose file the message came from.
        Messages from the primary transcript join the session's message list
        whatever their record-level ``agentId`` says, as they do on discovery.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        seen = self._message_ids.setdefault(session_id, set())
        if message.uuid in seen:
            return False
        seen.add(message.uuid)

        if source_agent_id is not None and source_agent_id != MAIN_AGENT_ID:
            for agent in session.agents:
                if agent.id == source_agent_id:
                    agent.messageCount += 1
                    agent.lastActivity = max(agent.lastActivity, message.timestamp)
            return True

        session.messages.append(message)
        if len(session.messages) > self.summary_limit:
            del session.messages[: len(session.messages) - self.summary_limit]
        session.messageCount += 1
        session.lastMessageAt = max(session.lastMessageAt, message.timestamp)
        if message.usage is not None:
            session.tokensIn += message.usage.input_tokens
            session.tokensOut += message.usage.output_tokens
        if message.role == "assistant" and message.model:
            session.model = message.model
        if session.summary is None:
            session.summary = _summarize([message])
        for agent in session.agents:
            if agent.id == MAIN_AGENT_ID:
                agent.messageCount += 1
                agent.lastActivity = max(agent.lastActivity, message.timestamp)
        return True

    def apply_snapshot(self, event: SessionSnapshotUpdated) -> None:
        path = Path(event.filePath)
        session = self._sessions.get(event.sessionId)
        if session is None:
            primary = _primary_transcript_for(path, event.sessionId)
            if not primary.is_file():
                return
            try:
                self._store(self.load_session(primary))
            except Exception:
                logger.exception("Error loading new session %s", event.sessionId)
            return

        self._expire_exit_override(event.sessionId)
        self._modified_at[event.sessionId] = event.lastMessageAt
        session.lastMessageAt = max(session.lastMessageAt, event.lastMessageAt)

        if event.agentId and not any(agent.id == event.agentId for agent in session.agents):
            try:
                agent, agent_path, offset = self._load_agent(event.sessionId, path, utc_now())
            except OSError as exc:
                logger.error(f"Error loading agent {event.agentId} for {event.sessionId}: {exc}")
            else:
                session.agents.append(agent)
                self._offsets[agent_path] = offset
        for agent in session.agents:
            if agent.id == (event.agentId or MAIN_AGENT_ID):
                agent.lastActivity = max(agent.lastActivity, event.lastMessageAt)

        self._refresh_status(session, utc_now())
