"""Observability helpers."""

from agent_hq.observability.otel import (
    initialize,
    shutdown,
    record_parser_failure,
    record_tail_batch,
    record_process_event,
)

__all__ = [
    "initialize",
    "shutdown",
    "record_parser_failure",
    "record_tail_batch",
    "record_process_event",
]
