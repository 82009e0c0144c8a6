"""Domain exceptions for Agent HQ.

Only failures addressed to a specific session or a synchronous command are
raised. Malformed transcript lines and truncated files are handled where they
occur and never show up here.
"""
from __future__ import annotations


class AgentHQError(Exception):
    """Base exception for all Agent HQ errors."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class SessionNotFoundError(AgentHQError):
    """Raised when a session id is unknown to the repository."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class ExecutableNotFoundError(AgentHQError):
    """Raised when the agent executable cannot be located."""

    def __init__(self, executable: str):
        self.executable = executable
        super().__init__(f"Executable '{executable}' not found on PATH")


class SpawnError(AgentHQError):
    """Raised when the agent executable exists but could not be started."""


class ForkFailedError(AgentHQError):
    """Raised when the fork subprocess exits with a nonzero code."""

    def __init__(self, session_id: str, exit_code: int | None, stderr: str = ""):
        self.session_id = session_id
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            f"Fork of session {session_id} failed with code {exit_code}",
            details=stderr.strip() or None,
        )
