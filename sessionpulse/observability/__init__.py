"""Observability helpers."""

from sessionpulse.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_ingestion,
    record_parser_failure,
    record_status_transition,
    record_session_event,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_parser_failure",
    "record_status_transition",
    "record_session_event",
]
