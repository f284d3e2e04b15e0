"""Hook signal files and the permission-pending status overlay.

Hooks write ``<session-id>.<kind>.json`` into the signals directory:

- ``working``: a user prompt started a turn (``working_since``)
- ``permission``: a tool waits for approval (``pending_since``, ``tool_name``)
- ``stop``: the turn ended (``stopped_at``)
- ``ended``: the session closed (``ended_at``)

Presence of a file is the whole protocol. Only ``permission`` overrides the
status derived from the log; the others are tracked for consumers.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sessionpulse.date_utils import normalize_timestamp
from sessionpulse.models import HookSignal, SignalKind, StatusResult

logger = logging.getLogger("sessionpulse.signals")

SIGNAL_SUFFIX = ".json"

_TIMESTAMP_FIELDS: dict[SignalKind, str] = {
    SignalKind.WORKING: "working_since",
    SignalKind.PERMISSION: "pending_since",
    SignalKind.STOP: "stopped_at",
    SignalKind.ENDED: "ended_at",
}


def parse_signal_path(path: Path) -> tuple[str, SignalKind] | None:
    """Split ``<session-id>.<kind>.json`` into its parts."""
    name = path.name
    if not name.endswith(SIGNAL_SUFFIX):
        return None
    session_id, _, kind_token = name[: -len(SIGNAL_SUFFIX)].rpartition(".")
    if not session_id:
        return None
    try:
        return session_id, SignalKind(kind_token)
    except ValueError:
        return None


def load_signal(path: Path) -> HookSignal | None:
    """Read one signal file; unreadable or malformed files count as absent."""
    parsed = parse_signal_path(path)
    if parsed is None:
        return None
    _, kind = parsed
    try:
        payload: Any = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.debug("Ignoring unreadable signal %s: %s", path.name, exc)
        return None
    if not isinstance(payload, dict):
        return None

    session_id = payload.get("session_id")
    if not isinstance(session_id, str) or not session_id.strip():
        return None
    tool_input = payload.get("tool_input")
    try:
        return HookSignal(
            sessionId=session_id.strip(),
            kind=kind,
            signalledAt=normalize_timestamp(payload.get(_TIMESTAMP_FIELDS[kind])),
            toolName=payload.get("tool_name") if isinstance(payload.get("tool_name"), str) else None,
            toolInput=tool_input if isinstance(tool_input, dict) else None,
        )
    except ValidationError as exc:
        logger.debug("Ignoring invalid signal %s: %s", path.name, exc)
        return None


def apply_permission_overlay(status: StatusResult, permission: HookSignal | None) -> StatusResult:
    """A pending permission forces ``waiting`` with a pending tool use."""
    if permission is None:
        return status
    return status.model_copy(update={"status": "waiting", "hasPendingToolUse": True})


class SignalStore:
    """In-memory view of the signals directory, keyed by session id."""

    def __init__(self, signals_dir: Path):
        self.signals_dir = signals_dir
        self._signals: dict[str, dict[SignalKind, HookSignal]] = {}

    def apply(self, path: Path) -> HookSignal | None:
        """Record the signal in ``path``; returns None if it is not usable."""
        signal = load_signal(path)
        if signal is None:
            return None
        self._signals.setdefault(signal.sessionId, {})[signal.kind] = signal
        if signal.kind == SignalKind.PERMISSION:
            logger.info(
                "Pending permission for session %s: %s",
                signal.sessionId[:8],
                signal.toolName or "unknown tool",
            )
        return signal

    def remove(self, path: Path) -> tuple[str, SignalKind] | None:
        """Forget the signal a deleted file carried."""
        parsed = parse_signal_path(path)
        if parsed is None:
            return None
        session_id, kind = parsed
        kinds = self._signals.get(session_id)
        if not kinds or kind not in kinds:
            return None
        del kinds[kind]
        if not kinds:
            del self._signals[session_id]
        if kind == SignalKind.PERMISSION:
            logger.info("Pending permission cleared for session %s", session_id[:8])
        return parsed

    def existing_paths(self) -> list[Path]:
        """Signal files already on disk; fed through ``apply`` like live writes."""
        if not self.signals_dir.is_dir():
            return []
        try:
            return sorted(self.signals_dir.glob(f"*{SIGNAL_SUFFIX}"))
        except OSError as exc:
            logger.warning("Cannot list signals directory %s: %s", self.signals_dir, exc)
            return []

    def signals_for(self, session_id: str) -> dict[SignalKind, HookSignal]:
        return dict(self._signals.get(session_id, {}))

    def pending_permission(self, session_id: str) -> HookSignal | None:
        return self._signals.get(session_id, {}).get(SignalKind.PERMISSION)

    def permission_path(self, session_id: str) -> Path:
        return self.signals_dir / f"{session_id}.{SignalKind.PERMISSION.value}{SIGNAL_SUFFIX}"

    def clear_permission(self, session_id: str) -> bool:
        """Drop a pending permission once its tool produced a result."""
        kinds = self._signals.get(session_id)
        if not kinds or SignalKind.PERMISSION not in kinds:
            return False
        del kinds[SignalKind.PERMISSION]
        if not kinds:
            del self._signals[session_id]
        try:
            self.permission_path(session_id).unlink(missing_ok=True)
        except OSError as exc:
            logger.debug("Could not remove permission signal for %s: %s", session_id[:8], exc)
        logger.info("Pending permission resolved by tool result for session %s", session_id[:8])
        return True
