"""Session status state machine.

Four states, driven by events derived from log records plus synthetic
timeout events computed at evaluation time:

- idle: no activity for the idle timeout
- working: the agent is processing (streaming or running tools)
- waiting_for_approval: a tool use has been pending past the approval timeout
- waiting_for_input: the turn ended and the agent waits for the user

Transitions live in ``TRANSITIONS``; pairs missing from the table are
ignored. ``transition`` never mutates the snapshot it receives, so replaying
the same records always produces the same result.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from sessionpulse import config
from sessionpulse.date_utils import elapsed_seconds, utc_now
from sessionpulse.models import (
    MachineSnapshot,
    StatusContext,
    StatusEvent,
    StatusEventType,
    StatusResult,
    StatusState,
)
from sessionpulse.parsers.classifier import classify

ContextAction = Callable[[StatusContext, StatusEvent], None]


@dataclass(frozen=True)
class StatusTimeouts:
    idle: float = 5 * 60.0
    approval: float = 5.0
    stale: float = 60.0

    @classmethod
    def from_config(cls) -> "StatusTimeouts":
        return cls(
            idle=config.IDLE_TIMEOUT_SECONDS,
            approval=config.APPROVAL_TIMEOUT_SECONDS,
            stale=config.STALE_TIMEOUT_SECONDS,
        )


DEFAULT_TIMEOUTS = StatusTimeouts()


# ── Context actions ────────────────────────────────────────────────


def _touch(context: StatusContext, event: StatusEvent) -> None:
    context.lastActivityAt = event.timestamp


def _count_message(context: StatusContext, event: StatusEvent) -> None:
    _touch(context, event)
    context.messageCount += 1


def _clear_pending(context: StatusContext) -> None:
    context.hasPendingToolUse = False
    context.pendingToolIds = []


def _prompt_while_working(context: StatusContext, event: StatusEvent) -> None:
    # A new prompt without a turn-end marker in between.
    _count_message(context, event)
    _clear_pending(context)


def _track_tool_use(context: StatusContext, event: StatusEvent) -> None:
    _count_message(context, event)
    context.pendingToolIds = list(dict.fromkeys(event.toolUseIds))
    context.hasPendingToolUse = bool(context.pendingToolIds)


def _resolve_tool_results(context: StatusContext, event: StatusEvent) -> None:
    _count_message(context, event)
    answered = set(event.toolUseIds)
    context.pendingToolIds = [tool_id for tool_id in context.pendingToolIds if tool_id not in answered]
    context.hasPendingToolUse = bool(context.pendingToolIds)


def _end_turn(context: StatusContext, event: StatusEvent) -> None:
    _touch(context, event)
    _clear_pending(context)


def _went_stale(context: StatusContext, event: StatusEvent) -> None:
    _clear_pending(context)


S = StatusState
E = StatusEventType

TRANSITIONS: dict[tuple[StatusState, StatusEventType], tuple[StatusState, Optional[ContextAction]]] = {
    (S.IDLE, E.USER_PROMPT): (S.WORKING, _count_message),
    (S.WORKING, E.USER_PROMPT): (S.WORKING, _prompt_while_working),
    (S.WORKING, E.ASSISTANT_STREAMING): (S.WORKING, _touch),
    (S.WORKING, E.ASSISTANT_TOOL_USE): (S.WORKING, _track_tool_use),
    (S.WORKING, E.TOOL_RESULT): (S.WORKING, _resolve_tool_results),
    (S.WORKING, E.TURN_END): (S.WAITING_FOR_INPUT, _end_turn),
    (S.WORKING, E.APPROVAL_TIMEOUT): (S.WAITING_FOR_APPROVAL, None),
    (S.WORKING, E.STALE_TIMEOUT): (S.WAITING_FOR_INPUT, _went_stale),
    (S.WORKING, E.IDLE_TIMEOUT): (S.IDLE, None),
    (S.WAITING_FOR_APPROVAL, E.TOOL_RESULT): (S.WORKING, _resolve_tool_results),
    (S.WAITING_FOR_APPROVAL, E.IDLE_TIMEOUT): (S.IDLE, None),
    (S.WAITING_FOR_INPUT, E.USER_PROMPT): (S.WORKING, _count_message),
    (S.WAITING_FOR_INPUT, E.IDLE_TIMEOUT): (S.IDLE, None),
}


def initial_snapshot() -> MachineSnapshot:
    return MachineSnapshot()


def transition(snapshot: MachineSnapshot, event: StatusEvent) -> MachineSnapshot:
    """Apply one event; returns the input unchanged when the pair is not handled."""
    entry = TRANSITIONS.get((snapshot.state, event.type))
    if entry is None:
        return snapshot
    target, action = entry
    context = snapshot.context.model_copy(deep=True)
    if action is not None:
        action(context, event)
    return MachineSnapshot(state=target, context=context)


def advance(snapshot: MachineSnapshot, records: Iterable[Any]) -> MachineSnapshot:
    """Feed records, in file order, through the classifier and the machine."""
    for record in records:
        event = classify(record)
        if event is not None:
            snapshot = transition(snapshot, event)
    return snapshot


def replay(records: Iterable[Any]) -> MachineSnapshot:
    return advance(initial_snapshot(), records)


def timeout_event(
    snapshot: MachineSnapshot,
    now: datetime,
    timeouts: StatusTimeouts = DEFAULT_TIMEOUTS,
) -> StatusEvent | None:
    """Pick the single timeout event that applies at ``now``, idle first."""
    elapsed = elapsed_seconds(snapshot.context.lastActivityAt, now)
    working = snapshot.state == StatusState.WORKING
    pending = snapshot.context.hasPendingToolUse

    if elapsed > timeouts.idle:
        return StatusEvent(type=StatusEventType.IDLE_TIMEOUT)
    if working and pending and elapsed > timeouts.approval:
        return StatusEvent(type=StatusEventType.APPROVAL_TIMEOUT)
    if working and not pending and elapsed > timeouts.stale:
        return StatusEvent(type=StatusEventType.STALE_TIMEOUT)
    return None


def apply_timeouts(
    snapshot: MachineSnapshot,
    now: datetime | None = None,
    timeouts: StatusTimeouts = DEFAULT_TIMEOUTS,
) -> MachineSnapshot:
    event = timeout_event(snapshot, now or utc_now(), timeouts)
    if event is None:
        return snapshot
    return transition(snapshot, event)


def machine_status_to_result(snapshot: MachineSnapshot) -> StatusResult:
    """Project the four machine states onto working / waiting / idle."""
    if snapshot.state == StatusState.WORKING:
        status = "working"
    elif snapshot.state == StatusState.IDLE:
        status = "idle"
    else:
        status = "waiting"
    context = snapshot.context
    return StatusResult(
        status=status,
        machineState=snapshot.state,
        hasPendingToolUse=context.hasPendingToolUse,
        lastActivityAt=context.lastActivityAt,
        messageCount=context.messageCount,
    )


def evaluate(
    snapshot: MachineSnapshot,
    now: datetime | None = None,
    timeouts: StatusTimeouts = DEFAULT_TIMEOUTS,
) -> StatusResult:
    return machine_status_to_result(apply_timeouts(snapshot, now, timeouts))


def derive_status(
    records: Iterable[Any],
    now: datetime | None = None,
    timeouts: StatusTimeouts = DEFAULT_TIMEOUTS,
) -> StatusResult:
    """Replay every record from session start, then apply timeouts once."""
    return evaluate(replay(records), now, timeouts)


def status_changed(previous: StatusResult | None, current: StatusResult) -> bool:
    if previous is None:
        return True
    return (
        previous.status != current.status
        or previous.hasPendingToolUse != current.hasPendingToolUse
    )


def status_key(result: StatusResult) -> str:
    if result.status == "waiting" and result.hasPendingToolUse:
        return "waiting:tool"
    return result.status


def format_status(result: StatusResult) -> str:
    if result.status == "working":
        return "Working"
    if result.status == "waiting":
        return "Tool pending" if result.hasPendingToolUse else "Waiting for input"
    return "Idle"
