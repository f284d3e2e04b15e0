"""Incremental JSONL tailing and session metadata extraction."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sessionpulse.errors import SessionFileGone
from sessionpulse.models import (
    LOG_RECORD_ADAPTER,
    RECORD_TYPES,
    SessionMetadata,
    UserRecord,
)

logger = logging.getLogger("sessionpulse.reader")

_NEWLINE = b"\n"


class MalformedRecord(ValueError):
    """A complete line that is not a valid log record."""


@dataclass
class TailResult:
    records: list[Any] = field(default_factory=list)
    new_position: int = 0
    malformed: int = 0


def parse_record(line: str | bytes) -> Any | None:
    """Parse one JSONL line.

    Returns the typed record, or None for well-formed lines whose type carries
    no signal (summaries, snapshots, ...). Raises MalformedRecord otherwise.
    """
    try:
        payload = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedRecord(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedRecord("record is not an object")
    if payload.get("type") not in RECORD_TYPES:
        return None
    try:
        return LOG_RECORD_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise MalformedRecord(f"invalid {payload.get('type')} record: {exc.error_count()} error(s)") from exc


def tail_jsonl(path: Path, from_byte: int = 0) -> TailResult:
    """Read records appended to ``path`` since ``from_byte``.

    Only newline-terminated lines are consumed; a partial trailing write stays
    unread until its delimiter arrives. Malformed lines are skipped and the
    offset moves past them, so each one is reported exactly once.
    """
    from_byte = max(0, from_byte)
    try:
        with path.open("rb") as handle:
            handle.seek(from_byte)
            chunk = handle.read()
    except FileNotFoundError as exc:
        raise SessionFileGone(path) from exc

    result = TailResult(new_position=from_byte)
    end = chunk.rfind(_NEWLINE)
    if end < 0:
        return result

    complete = chunk[: end + 1]
    line_start = from_byte
    for raw_line in complete.split(_NEWLINE)[:-1]:
        line_offset = line_start
        line_start += len(raw_line) + 1
        if not raw_line.strip():
            continue
        try:
            record = parse_record(raw_line)
        except MalformedRecord as exc:
            result.malformed += 1
            logger.warning("Skipping malformed record in %s at byte %d: %s", path.name, line_offset, exc)
            continue
        if record is not None:
            result.records.append(record)

    result.new_position = from_byte + len(complete)
    return result


def extract_session_id(path: Path) -> str:
    return path.stem


def extract_encoded_dir(path: Path) -> str:
    return path.parent.name


def is_subagent_log(path: Path) -> bool:
    return path.name.startswith("agent-")


def _prompt_text(record: UserRecord) -> str:
    if record.isMeta:
        return ""
    content = record.message.content
    if isinstance(content, str):
        return content.strip()
    if any(block.type == "tool_result" for block in content):
        return ""
    texts = [block.text.strip() for block in content if block.type == "text" and block.text]
    return "\n".join(text for text in texts if text)


def extract_metadata(records: list[Any], session_id: str | None = None) -> SessionMetadata | None:
    """Collect the fields needed to publish a session.

    Returns None until both a working directory and the originating prompt
    are present in the log.
    """
    cwd = ""
    git_branch: str | None = None
    prompt = ""
    started_at = ""
    record_session_id = ""

    for record in records:
        if not started_at and record.timestamp:
            started_at = record.timestamp
        if not cwd and record.cwd:
            cwd = record.cwd
        if git_branch is None and record.gitBranch:
            git_branch = record.gitBranch
        if not record_session_id and record.sessionId:
            record_session_id = record.sessionId
        if not prompt and isinstance(record, UserRecord):
            prompt = _prompt_text(record)
        if cwd and prompt and git_branch is not None and started_at:
            break

    if not cwd or not prompt:
        return None
    return SessionMetadata(
        sessionId=session_id or record_session_id,
        cwd=cwd,
        gitBranch=git_branch,
        originalPrompt=prompt,
        startedAt=started_at,
    )
