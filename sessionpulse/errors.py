"""Exceptions raised by the session inference engine."""
from __future__ import annotations

from pathlib import Path


class SessionPulseError(Exception):
    """Base class for sessionpulse errors."""


class SessionFileGone(SessionPulseError):
    """A session log disappeared between the change notification and the read.

    Callers treat this as "no new data" rather than a failure.
    """

    def __init__(self, path: Path):
        super().__init__(f"Session log vanished: {path}")
        self.path = path


class WatchRootUnavailable(SessionPulseError):
    """The projects root cannot be observed at all (e.g. permission denied)."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"Cannot watch {path}: {reason}")
        self.path = path
        self.reason = reason
