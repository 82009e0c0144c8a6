"""Incremental transcript tailer using watchfiles.

Watches the projects tree, debounces bursts of writes per file, and emits only
the messages appended since the last read. Each file is handled on its own:
a per-file timer restarts on every notification and, when it fires, the file
is read past its recorded line and the new messages are emitted in line order.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from watchfiles import Change, awatch

from agent_hq import config
from agent_hq.date_utils import utc_now
from agent_hq.events import EventBus, NewMessage, SessionSnapshotUpdated
from agent_hq.models import Message
from agent_hq.observability import record_tail_batch
from agent_hq.parsers.inference import agent_id_from_path, is_valid_uuid, resolve_session_id
from agent_hq.parsers.transcript import read_transcript

logger = logging.getLogger("agent_hq.tailer")


@dataclass
class FilePosition:
    path: Path
    last_line: int = 0
    last_size: int = 0


class SessionTailer:
    """Background watcher that emits per-file transcript deltas.

    All state (positions, timers) is touched only from the event loop.
    """

    def __init__(
        self,
        bus: EventBus,
        claude_home: Path | None = None,
        debounce_seconds: float | None = None,
    ):
        self.bus = bus
        self.claude_home = Path(claude_home or config.CLAUDE_HOME)
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else config.TAIL_DEBOUNCE_SECONDS
        )
        self._positions: dict[Path, FilePosition] = {}
        self._timers: dict[Path, asyncio.TimerHandle] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    @property
    def projects_dir(self) -> Path:
        return self.claude_home / config.PROJECTS_DIRNAME

    @property
    def is_running(self) -> bool:
        return self._running

    def position(self, path: Path) -> Optional[FilePosition]:
        return self._positions.get(Path(path))

    def seed(self, path: Path, last_line: int, last_size: int) -> None:
        """Record an already-consumed position, e.g. from a discovery scan.

        Does nothing if the file already has a position.
        """
        key = Path(path)
        if key not in self._positions:
            self._positions[key] = FilePosition(path=key, last_line=last_line, last_size=last_size)

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Start watching the projects tree in a background task."""
        if self._running:
            logger.debug("Tailer already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(self._stop_event))
        logger.info(f"Tailer started for {self.projects_dir}")

    async def stop(self) -> None:
        """Stop watching, cancel pending debounce timers, drop positions."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._stop_event = None

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._positions.clear()
        logger.info("Tailer stopped")

    async def _watch_loop(self, stop_event: asyncio.Event) -> None:
        if not self.projects_dir.is_dir():
            logger.warning(f"Projects directory {self.projects_dir} does not exist, tailer has nothing to watch")
            self._running = False
            return

        try:
            async for changes in awatch(self.projects_dir, stop_event=stop_event, debounce=50, step=25):
                if not self._running:
                    break
                for change_type, path_str in changes:
                    self.handle_change(change_type, Path(path_str))
        except asyncio.CancelledError:
            logger.info("Tailer task cancelled")
        except Exception as e:
            logger.error(f"Tailer watch error: {e}")
        finally:
            self._running = False

    # ── Change handling ─────────────────────────────────────────────

    def handle_change(self, change_type: Change, path: Path) -> None:
        """Route one raw filesystem notification."""
        if path.suffix != config.TRANSCRIPT_SUFFIX or resolve_session_id(path) is None:
            return

        if change_type == Change.deleted:
            self._cancel_timer(path)
            self._positions.pop(path, None)
            return
        self.schedule(path)

    def schedule(self, path: Path) -> None:
        """(Re)start the debounce window for ``path``."""
        self._cancel_timer(path)
        loop = asyncio.get_running_loop()
        self._timers[path] = loop.call_later(self.debounce_seconds, self._fire, path)

    def _cancel_timer(self, path: Path) -> None:
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()

    def _fire(self, path: Path) -> None:
        self._timers.pop(path, None)
        try:
            self.process_file(path)
        except Exception:
            logger.exception("Error processing file change for %s", path)

    def process_file(self, path: Path) -> list[Message]:
        """Read lines past the recorded position and emit them.

        Returns the messages emitted. A file that shrank since the last read is
        treated as truncated or rotated and re-read from the first line.
        """
        path = Path(path)
        session_id = resolve_session_id(path)
        if session_id is None:
            return []

        try:
            size = path.stat().st_size
        except FileNotFoundError:
            self._positions.pop(path, None)
            return []

        position = self._positions.get(path)
        if position is not None and size < position.last_size:
            logger.info(f"Transcript {path} shrank ({position.last_size} -> {size}), re-reading from start")
            record_tail_batch("truncated")
            del self._positions[path]
            position = None

        agent_id = None if is_valid_uuid(path.stem) else agent_id_from_path(path)
        start_line = position.last_line if position else 0
        batch = read_transcript(path, start_line, session_id=session_id, agent_id=agent_id)

        for message in batch.messages:
            self.bus.emit(NewMessage(sessionId=session_id, message=message, agentId=agent_id))
        if batch.messages:
            self.bus.emit(
                SessionSnapshotUpdated(
                    sessionId=session_id,
                    lastMessageAt=utc_now(),
                    filePath=str(path),
                    agentId=agent_id,
                )
            )
            record_tail_batch("messages")
        else:
            record_tail_batch("empty")

        self._positions[path] = FilePosition(path=path, last_line=batch.last_line, last_size=batch.size)
        return batch.messages
