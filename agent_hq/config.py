"""Agent HQ Configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# Claude home (contains projects/<encoded-workspace>/<session>.jsonl)
CLAUDE_HOME = Path(os.getenv("AGENT_HQ_CLAUDE_HOME", str(Path.home() / ".claude"))).expanduser()
PROJECTS_DIRNAME = "projects"
SUBAGENTS_DIRNAME = "subagents"
TRANSCRIPT_SUFFIX = ".jsonl"

# External agent executable
CLAUDE_EXECUTABLE = os.getenv("AGENT_HQ_CLAUDE_EXECUTABLE", "claude")
EXIT_DIRECTIVE = os.getenv("AGENT_HQ_EXIT_DIRECTIVE", "/exit")

# Status inference windows
ACTIVE_WINDOW_SECONDS = _env_float("AGENT_HQ_ACTIVE_WINDOW_SECONDS", 30.0)
IDLE_WINDOW_SECONDS = _env_float("AGENT_HQ_IDLE_WINDOW_SECONDS", 300.0)

# Summary view
SUMMARY_MESSAGE_LIMIT = _env_int("AGENT_HQ_SUMMARY_MESSAGE_LIMIT", 50)

# Timers (milliseconds in env, seconds in code)
TAIL_DEBOUNCE_SECONDS = _env_int("AGENT_HQ_TAIL_DEBOUNCE_MS", 100) / 1000.0
INTERRUPT_DELAY_SECONDS = _env_int("AGENT_HQ_INTERRUPT_DELAY_MS", 100) / 1000.0
RELEASE_GRACE_SECONDS = _env_int("AGENT_HQ_RELEASE_GRACE_MS", 1000) / 1000.0

# Startup
WATCH_ON_STARTUP = _env_bool("AGENT_HQ_WATCH_ON_STARTUP", True)

# Observability
OTEL_ENABLED = _env_bool("AGENT_HQ_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("AGENT_HQ_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("AGENT_HQ_OTEL_SERVICE_NAME", "agent-hq")
PROM_PORT = _env_int("AGENT_HQ_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("AGENT_HQ_HOST", "127.0.0.1")
PORT = int(os.getenv("AGENT_HQ_PORT", "8000"))

# CORS
FRONTEND_ORIGIN = os.getenv("AGENT_HQ_FRONTEND_ORIGIN", "http://localhost:3000")
