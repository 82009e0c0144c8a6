"""Supervise interactive agent subprocesses, at most one per session.

The controller spawns the agent executable in resume mode, bridges its
standard streams onto the event bus, and implements the queue/interrupt send
semantics, graceful release with escalation, and the fork operation.
"""
from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import shutil
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from agent_hq import config
from agent_hq.errors import ExecutableNotFoundError, ForkFailedError, SpawnError
from agent_hq.events import (
    EventBus,
    ProcessErrorOutput,
    RawOutput,
    SessionStatusChanged,
    StructuredOutput,
)
from agent_hq.models import SendMode
from agent_hq.observability import record_process_event
from agent_hq.parsers.transcript import JsonLineBuffer, classify_stream_record

logger = logging.getLogger("agent_hq.controller")

_READ_CHUNK_BYTES = 64 * 1024


def resolve_executable(name: str) -> str:
    """Locate the agent executable on PATH or in its per-user install dir."""
    candidate = Path(name).expanduser()
    if candidate.is_absolute():
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        raise ExecutableNotFoundError(name)

    found = shutil.which(name)
    if found:
        return found
    local = Path.home() / ".claude" / "local" / name
    if local.is_file() and os.access(local, os.X_OK):
        return str(local)
    raise ExecutableNotFoundError(name)


def resolve_working_dir(working_dir: Optional[str]) -> str:
    """Use ``working_dir`` if it is an absolute existing directory, else home.

    Relative paths fall back to home, and so do absolute paths that do not
    name an existing directory, since spawning with a missing ``cwd`` fails.
    """
    if working_dir and os.path.isabs(working_dir) and os.path.isdir(working_dir):
        return working_dir
    return str(Path.home())


def parse_fork_output(output: str, fallback_session_id: str) -> str:
    """Extract the new session id from ``--output-format json`` output."""
    try:
        parsed = json.loads(output)
    except ValueError:
        logger.warning("Fork output for %s is not JSON, keeping original id", fallback_session_id)
        return fallback_session_id
    if isinstance(parsed, dict):
        for key in ("session_id", "sessionId"):
            value = parsed.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return fallback_session_id


@dataclass(eq=False)
class ControlledSession:
    session_id: str
    working_dir: str
    process: asyncio.subprocess.Process
    is_alive: bool = True
    supervisor: Optional[asyncio.Task] = None
    escalation: Optional[asyncio.TimerHandle] = None
    pumps: list[asyncio.Task] = field(default_factory=list)


class ProcessController:
    """Owns the controlled-session map. Touched only from the event loop."""

    def __init__(
        self,
        bus: EventBus,
        executable: str | None = None,
        interrupt_delay: float | None = None,
        grace_period: float | None = None,
        exit_directive: str | None = None,
    ):
        self.bus = bus
        self.executable = executable or config.CLAUDE_EXECUTABLE
        self.interrupt_delay = interrupt_delay if interrupt_delay is not None else config.INTERRUPT_DELAY_SECONDS
        self.grace_period = grace_period if grace_period is not None else config.RELEASE_GRACE_SECONDS
        self.exit_directive = exit_directive or config.EXIT_DIRECTIVE
        self._sessions: dict[str, ControlledSession] = {}
        self._spawning: dict[str, asyncio.Future[bool]] = {}
        # Every process not yet reaped, controlled or already released.
        self._live: set[ControlledSession] = set()

    def is_controlled(self, session_id: str) -> bool:
        return session_id in self._sessions

    @property
    def controlled_session_ids(self) -> list[str]:
        return list(self._sessions)

    # ── Take control ────────────────────────────────────────────────

    async def take_control(self, session_id: str, working_dir: Optional[str] = None) -> bool:
        """Spawn ``<executable> --resume <session_id>``. Never raises."""
        if session_id in self._sessions:
            logger.info("Session %s is already controlled", session_id)
            return True
        pending = self._spawning.get(session_id)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._spawning[session_id] = future
        try:
            result = await self._spawn(session_id, working_dir)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception:
            logger.exception("Failed to take over session %s", session_id)
            result = False
        finally:
            self._spawning.pop(session_id, None)
        future.set_result(result)
        return result

    async def _spawn(self, session_id: str, working_dir: Optional[str]) -> bool:
        cwd = resolve_working_dir(working_dir)
        try:
            executable = resolve_executable(self.executable)
        except ExecutableNotFoundError as exc:
            logger.error(f"Cannot take over session {session_id}: {exc}")
            record_process_event("spawn_failed")
            return False

        logger.info(f"Taking over session {session_id} in {cwd}")
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                "--resume",
                session_id,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=os.environ.copy(),
            )
        except OSError as exc:
            logger.error(f"Failed to spawn {executable} for session {session_id}: {exc}")
            record_process_event("spawn_failed")
            self.bus.emit(SessionStatusChanged(sessionId=session_id, status="error"))
            return False

        controlled = ControlledSession(session_id=session_id, working_dir=cwd, process=process)
        self._sessions[session_id] = controlled
        self._live.add(controlled)
        controlled.supervisor = asyncio.create_task(self._supervise(controlled))
        record_process_event("spawned")
        self.bus.emit(SessionStatusChanged(sessionId=session_id, status="active"))
        return True

    async def _supervise(self, controlled: ControlledSession) -> None:
        controlled.pumps = [
            asyncio.create_task(self._pump_stdout(controlled)),
            asyncio.create_task(self._pump_stderr(controlled)),
        ]
        try:
            code = await controlled.process.wait()
            _, unfinished = await asyncio.wait(controlled.pumps, timeout=max(self.grace_period, 0.1))
            for task in unfinished:
                task.cancel()
        except asyncio.CancelledError:
            for task in controlled.pumps:
                task.cancel()
            raise
        finally:
            controlled.is_alive = False
            if controlled.escalation is not None:
                controlled.escalation.cancel()
                controlled.escalation = None
            self._live.discard(controlled)

        logger.info(f"Agent process for session {controlled.session_id} exited with code {code}")
        record_process_event("exited_ok" if code == 0 else "exited_error")
        current = self._sessions.get(controlled.session_id)
        if current is controlled:
            del self._sessions[controlled.session_id]
        elif current is not None:
            logger.info("Session %s already has a newer process, not reporting old exit", controlled.session_id)
            return
        self.bus.emit(
            SessionStatusChanged(
                sessionId=controlled.session_id,
                status="completed" if code == 0 else "error",
            )
        )

    async def _pump_stdout(self, controlled: ControlledSession) -> None:
        stream = controlled.process.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        records = JsonLineBuffer()
        while True:
            data = await stream.read(_READ_CHUNK_BYTES)
            if not data:
                break
            chunk = decoder.decode(data)
            if chunk:
                self.bus.emit(RawOutput(sessionId=controlled.session_id, chunk=chunk))
                self._emit_records(controlled.session_id, records.feed(chunk))
        tail = decoder.decode(b"", final=True)
        if tail:
            self.bus.emit(RawOutput(sessionId=controlled.session_id, chunk=tail))
            records.feed(tail)
        self._emit_records(controlled.session_id, records.flush())

    def _emit_records(self, session_id: str, records: list[dict]) -> None:
        for record in records:
            for kind, payload in classify_stream_record(record):
                self.bus.emit(StructuredOutput(sessionId=session_id, kind=kind, payload=payload))

    async def _pump_stderr(self, controlled: ControlledSession) -> None:
        stream = controlled.process.stderr
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_CHUNK_BYTES)
            if not data:
                break
            chunk = decoder.decode(data)
            if chunk:
                self.bus.emit(ProcessErrorOutput(sessionId=controlled.session_id, chunk=chunk))

    # ── Input ───────────────────────────────────────────────────────

    async def _write(self, controlled: ControlledSession, text: str) -> bool:
        stdin = controlled.process.stdin
        if stdin is None or stdin.is_closing():
            logger.warning("Input stream for session %s is closed", controlled.session_id)
            return False
        try:
            stdin.write(text.encode("utf-8"))
            await asyncio.wait_for(stdin.drain(), timeout=max(self.grace_period, 0.1))
        except asyncio.TimeoutError:
            logger.warning("Input stream for session %s is not being read", controlled.session_id)
            return False
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning(f"Write to session {controlled.session_id} failed: {exc}")
            return False
        return True

    async def send_message(self, session_id: str, text: str, mode: SendMode = "queue") -> bool:
        """Write ``text`` to the session's input, interrupting first if asked.

        Logs and returns False when the session is not live.
        """
        if mode not in ("interrupt", "queue"):
            raise ValueError(f"Unknown send mode: {mode}")
        controlled = self._sessions.get(session_id)
        if controlled is None or not controlled.is_alive:
            logger.error("Session %s is not controlled or not alive", session_id)
            return False

        if mode == "interrupt":
            try:
                controlled.process.send_signal(signal.SIGINT)
            except ProcessLookupError:
                logger.warning("Session %s exited before interrupt", session_id)
                return False
            # Let the process get back to its input loop before writing.
            await asyncio.sleep(self.interrupt_delay)
            if not controlled.is_alive:
                logger.warning("Session %s exited after interrupt", session_id)
                return False

        return await self._write(controlled, f"{text}\n")

    # ── Release ─────────────────────────────────────────────────────

    async def release(self, session_id: str) -> None:
        """Ask the process to exit and forget it immediately.

        The process gets ``grace_period`` seconds to exit on its own before it
        is sent SIGTERM.
        """
        controlled = self._sessions.pop(session_id, None)
        if controlled is None:
            return

        if controlled.is_alive:
            # Armed before the write: a child that stops reading input still gets SIGTERM.
            loop = asyncio.get_running_loop()
            controlled.escalation = loop.call_later(self.grace_period, self._escalate, controlled)
            await self._write(controlled, f"{self.exit_directive}\n")
        record_process_event("released")
        logger.info("Released session %s", session_id)

    def _escalate(self, controlled: ControlledSession) -> None:
        controlled.escalation = None
        if not controlled.is_alive:
            return
        logger.info("Session %s did not exit in time, sending SIGTERM", controlled.session_id)
        try:
            controlled.process.terminate()
        except ProcessLookupError:
            pass

    async def release_all(self) -> None:
        for session_id in list(self._sessions):
            await self.release(session_id)

    async def shutdown(self) -> None:
        """Release everything and wait for the processes to be reaped."""
        await self.release_all()
        supervisors = [c.supervisor for c in self._live if c.supervisor is not None]
        if supervisors:
            await asyncio.wait(supervisors, timeout=self.grace_period + 1.0)
        for controlled in list(self._live):
            if controlled.escalation is not None:
                controlled.escalation.cancel()
                controlled.escalation = None
            if controlled.is_alive:
                logger.warning("Killing agent process for session %s", controlled.session_id)
                try:
                    controlled.process.kill()
                except ProcessLookupError:
                    pass

    # ── Fork ────────────────────────────────────────────────────────

    async def fork(self, session_id: str, working_dir: Optional[str] = None) -> str:
        """Fork ``session_id`` into a new session and return the new id.

        Returns the original id when the output carries no parsable id.
        Raises ForkFailedError on a nonzero exit.
        """
        executable = resolve_executable(self.executable)
        cwd = resolve_working_dir(working_dir)
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                "--resume",
                session_id,
                "--fork-session",
                "--print",
                "--output-format",
                "json",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=os.environ.copy(),
            )
        except OSError as exc:
            raise SpawnError(f"Could not start fork of session {session_id}", details=str(exc)) from exc

        stdout, stderr = await process.communicate(b"\n")
        if process.returncode != 0:
            record_process_event("fork_failed")
            raise ForkFailedError(session_id, process.returncode, stderr.decode("utf-8", errors="replace"))

        record_process_event("forked")
        return parse_fork_output(stdout.decode("utf-8", errors="replace"), session_id)
