"""Map log records to status machine events."""
from __future__ import annotations

from typing import Any

from sessionpulse.models import (
    AssistantRecord,
    StatusEvent,
    StatusEventType,
    SystemRecord,
    UserRecord,
)

# Sub-agent spawns run without user approval.
_APPROVAL_EXEMPT_TOOLS = {"Task"}

_TURN_END_SUBTYPES = {"turn_duration", "stop_hook_summary"}


def classify(record: Any) -> StatusEvent | None:
    """Return the single status event a record implies, if any."""
    if isinstance(record, UserRecord):
        content = record.message.content
        if isinstance(content, str):
            return StatusEvent(type=StatusEventType.USER_PROMPT, timestamp=record.timestamp)
        tool_use_ids = tuple(
            block.tool_use_id or ""
            for block in content
            if block.type == "tool_result"
        )
        if tool_use_ids:
            return StatusEvent(
                type=StatusEventType.TOOL_RESULT,
                timestamp=record.timestamp,
                toolUseIds=tool_use_ids,
            )
        if any(block.type == "text" for block in content):
            return StatusEvent(type=StatusEventType.USER_PROMPT, timestamp=record.timestamp)
        return None

    if isinstance(record, AssistantRecord):
        tool_use_ids = tuple(
            block.id or ""
            for block in record.message.content
            if block.type == "tool_use" and block.name not in _APPROVAL_EXEMPT_TOOLS
        )
        if tool_use_ids:
            return StatusEvent(
                type=StatusEventType.ASSISTANT_TOOL_USE,
                timestamp=record.timestamp,
                toolUseIds=tool_use_ids,
            )
        return StatusEvent(type=StatusEventType.ASSISTANT_STREAMING, timestamp=record.timestamp)

    if isinstance(record, SystemRecord) and record.subtype in _TURN_END_SUBTYPES:
        return StatusEvent(type=StatusEventType.TURN_END, timestamp=record.timestamp)

    return None


def has_tool_result(record: Any) -> bool:
    event = classify(record)
    return event is not None and event.type == StatusEventType.TOOL_RESULT
