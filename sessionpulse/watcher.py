"""Session watcher using watchfiles.

Monitors the projects tree for session JSONL logs and the signals directory
for hook signal files, tails each log incrementally, and keeps the session
registry's derived status current. Changes are published as SessionEvents on
``SessionWatcher.events``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Coroutine, Optional

from watchfiles import Change, awatch

from sessionpulse import config
from sessionpulse.date_utils import parse_timestamp, utc_now
from sessionpulse.errors import SessionFileGone, WatchRootUnavailable
from sessionpulse.models import (
    HookSignal,
    RepoInfo,
    SessionEvent,
    SessionEventType,
    SessionState,
    SignalKind,
    StatusResult,
)
from sessionpulse.observability import (
    record_ingestion,
    record_parser_failure,
    record_session_event,
    record_status_transition,
    start_span,
)
from sessionpulse.parsers.classifier import has_tool_result
from sessionpulse.parsers.log_reader import (
    extract_encoded_dir,
    extract_metadata,
    extract_session_id,
    is_subagent_log,
    tail_jsonl,
)
from sessionpulse.registry import SessionRegistry
from sessionpulse.repo_info import RepoInfoResolver
from sessionpulse.signals import SIGNAL_SUFFIX, SignalStore, apply_permission_overlay
from sessionpulse.status_machine import (
    StatusTimeouts,
    advance,
    evaluate,
    initial_snapshot,
    status_changed,
)

logger = logging.getLogger("sessionpulse.watcher")

ADDED = "added"
MODIFIED = "modified"
DELETED = "deleted"


@dataclass
class _PendingLog:
    """Records read from a log that does not yet identify its session."""

    records: list[Any] = field(default_factory=list)
    position: int = 0


class SessionWatcher:
    """Background watcher that keeps session status in step with the logs.

    All registry mutation happens on the event loop; work on one log file is
    serialized by a per-path lock and by the change debounce.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        signals: SignalStore,
        repo_resolver: RepoInfoResolver,
        *,
        projects_dir: Path | None = None,
        debounce_ms: int | None = None,
        stale_check_interval: float | None = None,
        timeouts: StatusTimeouts | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.signals = signals
        self.repo_resolver = repo_resolver
        self.projects_dir = projects_dir or config.PROJECTS_DIR
        self.debounce_ms = config.DEBOUNCE_MS if debounce_ms is None else debounce_ms
        self.stale_check_interval = (
            config.STALE_CHECK_SECONDS if stale_check_interval is None else stale_check_interval
        )
        self.timeouts = timeouts or StatusTimeouts.from_config()
        self._clock = clock

        self.events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self.failure: Optional[BaseException] = None

        self._running = False
        self._stop_event = asyncio.Event()
        self._failed = asyncio.Event()
        self._background: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._debounce_handles: dict[str, asyncio.TimerHandle] = {}
        self._file_locks: dict[str, asyncio.Lock] = {}
        self._pending_logs: dict[str, _PendingLog] = {}

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Load existing signals and logs, then watch for changes."""
        if self._running:
            logger.warning("Session watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()

        for path in self.signals.existing_paths():
            self.handle_signal_written(path)
        await self.scan_existing()

        self._start_background(self._watch_projects(), "projects-watch")
        self._start_background(self._watch_signals(), "signals-watch")
        self._start_background(self._sweep_loop(), "stale-sweep")
        logger.info(
            "Session watcher started (projects=%s signals=%s sessions=%d)",
            self.projects_dir,
            self.signals.signals_dir,
            len(self.registry),
        )

    async def stop(self) -> None:
        """Cancel timers and background tasks; let in-flight reads finish."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        for handle in self._debounce_handles.values():
            handle.cancel()
        self._debounce_handles.clear()

        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []

        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        logger.info("Session watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def wait_failed(self) -> BaseException:
        """Block until a watcher-level failure halts the engine."""
        await self._failed.wait()
        assert self.failure is not None
        return self.failure

    def _start_background(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=f"sessionpulse-{name}")
        task.add_done_callback(self._on_background_done)
        self._background.append(task)

    def _on_background_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self.failure = exc
        logger.critical("Session watcher halted: %s", exc, exc_info=exc)
        self._failed.set()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    # ── Session logs ───────────────────────────────────────────────

    def _is_session_log(self, path: Path) -> bool:
        if path.suffix != ".jsonl" or is_subagent_log(path):
            return False
        try:
            relative = path.relative_to(self.projects_dir)
        except ValueError:
            return False
        return len(relative.parts) == 2

    def _session_filter(self, change: Change, path: str) -> bool:
        return self._is_session_log(Path(path))

    async def scan_existing(self) -> None:
        """Handle logs already on disk as if they had just been added."""
        if not self.projects_dir.is_dir():
            logger.warning("Projects directory %s does not exist yet", self.projects_dir)
            return
        try:
            paths = sorted(self.projects_dir.glob("*/*.jsonl"))
        except PermissionError as exc:
            raise WatchRootUnavailable(self.projects_dir, str(exc)) from exc
        for path in paths:
            if self._is_session_log(path):
                await self.handle_file(path, ADDED)

    async def _watch_projects(self) -> None:
        missing_logged = False
        while not self._stop_event.is_set():
            if not self.projects_dir.is_dir():
                if not missing_logged:
                    logger.warning("Waiting for projects directory %s", self.projects_dir)
                    missing_logged = True
                await self._wait_stop(config.WATCH_ROOT_RETRY_SECONDS)
                continue
            if missing_logged:
                missing_logged = False
                await self.scan_existing()

            try:
                async for changes in awatch(
                    self.projects_dir,
                    watch_filter=self._session_filter,
                    stop_event=self._stop_event,
                    debounce=config.WATCH_STEP_MS,
                    step=config.WATCH_STEP_MS,
                ):
                    for change, raw_path in changes:
                        self.dispatch_session_change(change, Path(raw_path))
            except PermissionError as exc:
                raise WatchRootUnavailable(self.projects_dir, str(exc)) from exc
            except FileNotFoundError:
                logger.warning("Projects directory %s disappeared", self.projects_dir)
                missing_logged = True
                await self._wait_stop(config.WATCH_ROOT_RETRY_SECONDS)

    def dispatch_session_change(self, change: Change, path: Path) -> None:
        key = str(path)
        if change == Change.deleted and not path.exists():
            self._cancel_debounce(key)
            self._spawn(self.handle_delete(path))
        elif change == Change.added or change == Change.deleted:
            # New file (or deleted and recreated within one batch).
            logger.debug("New session log detected: %s/%s", path.parent.name, path.name)
            self._cancel_debounce(key)
            self._spawn(self.handle_file(path, ADDED))
        else:
            self._schedule_debounced(path)

    def _cancel_debounce(self, key: str) -> None:
        handle = self._debounce_handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _schedule_debounced(self, path: Path) -> None:
        key = str(path)
        self._cancel_debounce(key)
        loop = asyncio.get_running_loop()
        self._debounce_handles[key] = loop.call_later(
            self.debounce_ms / 1000.0,
            self._fire_debounced,
            path,
        )

    def _fire_debounced(self, path: Path) -> None:
        self._debounce_handles.pop(str(path), None)
        if self._running:
            self._spawn(self.handle_file(path, MODIFIED))

    def _lock_for(self, path: Path) -> asyncio.Lock:
        return self._file_locks.setdefault(str(path), asyncio.Lock())

    async def handle_file(self, path: Path, change: str = MODIFIED) -> None:
        """Process new records in one log; failures stay isolated to it."""
        async with self._lock_for(path):
            try:
                await self._process_file(path, change)
            except SessionFileGone:
                logger.debug("Session log vanished before it could be read: %s", path)
            except Exception:
                logger.exception("Failed to process session log %s", path)

    async def _process_file(self, path: Path, change: str) -> None:
        key = str(path)
        session_id = extract_session_id(path)
        encoded_dir = extract_encoded_dir(path)
        existing = self.registry.get(session_id)
        pending = None if existing else self._pending_logs.get(key)
        if existing:
            from_byte = existing.bytePosition
        elif pending:
            from_byte = pending.position
        else:
            from_byte = 0

        started = time.monotonic()
        with start_span("sessionpulse.tail", {"session.id": session_id, "change": change}):
            tail = await asyncio.to_thread(tail_jsonl, path, from_byte)
        record_ingestion(
            len(tail.records),
            (time.monotonic() - started) * 1000,
            project=encoded_dir,
        )
        if tail.malformed:
            record_parser_failure("jsonl", project=encoded_dir, count=tail.malformed)

        if existing is not None:
            if not tail.records:
                existing.bytePosition = max(existing.bytePosition, tail.new_position)
                return
            await self._update_session(existing, tail.records, tail.new_position)
            return

        records = (pending.records if pending else []) + tail.records
        metadata = extract_metadata(records, session_id)
        if metadata is None:
            self._pending_logs[key] = _PendingLog(records=records, position=tail.new_position)
            logger.debug("Not enough data yet for session %s", session_id[:8])
            return

        repo = await self.repo_resolver.get(metadata.cwd)
        self._pending_logs.pop(key, None)
        self._resolve_permission(session_id, records)
        machine = advance(initial_snapshot(), records)
        permission = self.signals.pending_permission(session_id)
        status = apply_permission_overlay(
            evaluate(machine, self._clock(), self.timeouts),
            permission,
        )
        session = SessionState(
            sessionId=session_id,
            filepath=key,
            encodedDir=encoded_dir,
            cwd=metadata.cwd,
            gitBranch=_branch_for(repo, metadata.gitBranch),
            originalPrompt=metadata.originalPrompt,
            startedAt=metadata.startedAt,
            records=records,
            bytePosition=tail.new_position,
            machine=machine,
            status=status,
            pendingPermission=permission,
            signals=self._signal_kinds(session_id),
            gitRepoUrl=repo.repoUrl,
            gitRepoId=repo.repoId,
        )
        self.registry.upsert(session)
        self._publish(SessionEventType.CREATED, session)

    async def _update_session(
        self,
        session: SessionState,
        new_records: list[Any],
        new_position: int,
    ) -> None:
        # Nothing is committed before the lookup resolves, so a failure leaves
        # the offset in place and the records are read again. The branch is
        # re-resolved before the permission overlay is merged.
        repo = await self.repo_resolver.get(session.cwd)
        current_branch = _branch_for(repo, session.gitBranch)
        previous_branch = session.gitBranch
        branch_changed = current_branch != previous_branch
        if branch_changed:
            logger.info(
                "Branch changed for %s: %s -> %s",
                session.sessionId[:8],
                previous_branch,
                current_branch,
            )

        self._resolve_permission(session.sessionId, new_records)
        machine = advance(session.machine, new_records)
        permission = self.signals.pending_permission(session.sessionId)
        status = apply_permission_overlay(
            evaluate(machine, self._clock(), self.timeouts),
            permission,
        )

        previous_status = session.status
        session.records = session.records + new_records
        session.bytePosition = max(session.bytePosition, new_position)
        session.machine = machine
        session.status = status
        session.pendingPermission = permission
        session.signals = self._signal_kinds(session.sessionId)
        session.gitBranch = current_branch
        session.gitRepoUrl = repo.repoUrl or session.gitRepoUrl
        session.gitRepoId = repo.repoId or session.gitRepoId
        session.branchChanged = branch_changed
        self.registry.upsert(session)

        has_new_messages = status.messageCount > previous_status.messageCount
        if status_changed(previous_status, status) or has_new_messages or branch_changed:
            self._publish(
                SessionEventType.UPDATED,
                session,
                previous_status=previous_status,
                previous_branch=previous_branch if branch_changed else None,
            )

    def _resolve_permission(self, session_id: str, new_records: list[Any]) -> None:
        """Clear a pending permission once a later tool result shows up."""
        permission = self.signals.pending_permission(session_id)
        if permission is None:
            return
        if any(_answers_permission(record, permission) for record in new_records):
            self.signals.clear_permission(session_id)

    async def handle_delete(self, path: Path) -> None:
        key = str(path)
        async with self._lock_for(path):
            self._pending_logs.pop(key, None)
            session = self.registry.find_by_path(key)
            if session is not None:
                self.registry.delete(session.sessionId)
                logger.info("Session log removed: %s", session.sessionId[:8])
                self._publish(SessionEventType.DELETED, session)
        self._file_locks.pop(key, None)

    # ── Signals ────────────────────────────────────────────────────

    async def _watch_signals(self) -> None:
        signals_dir = self.signals.signals_dir
        while not self._stop_event.is_set():
            if not signals_dir.is_dir():
                await self._wait_stop(config.WATCH_ROOT_RETRY_SECONDS)
                continue
            try:
                async for changes in awatch(
                    signals_dir,
                    watch_filter=lambda change, path: path.endswith(SIGNAL_SUFFIX),
                    stop_event=self._stop_event,
                    debounce=config.WATCH_STEP_MS,
                    step=config.WATCH_STEP_MS,
                    recursive=False,
                ):
                    for change, raw_path in changes:
                        self.dispatch_signal_change(change, Path(raw_path))
            except OSError as exc:
                # Hooks may not be installed; signals are optional.
                logger.debug("Signals watch interrupted: %s", exc)
                await self._wait_stop(config.WATCH_ROOT_RETRY_SECONDS)

    def dispatch_signal_change(self, change: Change, path: Path) -> None:
        try:
            if change == Change.deleted and not path.exists():
                self.handle_signal_removed(path)
            else:
                self.handle_signal_written(path)
        except Exception:
            logger.exception("Failed to process signal file %s", path)

    def _signal_kinds(self, session_id: str) -> list[SignalKind]:
        return sorted(self.signals.signals_for(session_id), key=lambda kind: kind.value)

    def handle_signal_written(self, path: Path) -> None:
        signal = self.signals.apply(path)
        if signal is None:
            return
        session = self.registry.get(signal.sessionId)
        if session is None:
            return
        session.signals = self._signal_kinds(session.sessionId)
        if signal.kind == SignalKind.WORKING:
            # A new turn may follow a checkout.
            self.repo_resolver.invalidate(session.cwd)
        if signal.kind != SignalKind.PERMISSION:
            return
        previous_permission = session.pendingPermission
        previous_status = session.status
        session.pendingPermission = signal
        session.status = apply_permission_overlay(session.status, signal)
        if previous_permission != signal or status_changed(previous_status, session.status):
            self._publish(SessionEventType.UPDATED, session, previous_status=previous_status)

    def handle_signal_removed(self, path: Path) -> None:
        removed = self.signals.remove(path)
        if removed is None:
            return
        session_id, kind = removed
        session = self.registry.get(session_id)
        if session is None:
            return
        session.signals = self._signal_kinds(session_id)
        if kind != SignalKind.PERMISSION or session.pendingPermission is None:
            return
        previous_status = session.status
        session.pendingPermission = None
        session.status = evaluate(session.machine, self._clock(), self.timeouts)
        self._publish(SessionEventType.UPDATED, session, previous_status=previous_status)

    # ── Staleness sweep ────────────────────────────────────────────

    async def _sweep_loop(self) -> None:
        while not self._stop_event.is_set():
            await self._wait_stop(self.stale_check_interval)
            if self._stop_event.is_set():
                return
            try:
                self.check_stale_sessions()
            except Exception:
                logger.exception("Stale session sweep failed")

    def check_stale_sessions(self, now: datetime | None = None) -> int:
        """Re-evaluate working sessions so timeouts surface without new writes."""
        now = now or self._clock()
        changed = 0
        for session in self.registry.working_sessions():
            status = apply_permission_overlay(
                evaluate(session.machine, now, self.timeouts),
                session.pendingPermission,
            )
            if status_changed(session.status, status):
                previous_status = session.status
                session.status = status
                self._publish(SessionEventType.UPDATED, session, previous_status=previous_status)
                changed += 1
        return changed

    # ── Helpers ────────────────────────────────────────────────────

    async def _wait_stop(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    def _publish(
        self,
        event_type: SessionEventType,
        session: SessionState,
        previous_status: StatusResult | None = None,
        previous_branch: str | None = None,
    ) -> None:
        self.events.put_nowait(
            SessionEvent(
                type=event_type,
                # Live session fields are only ever reassigned, so a shallow
                # copy freezes what this event reports.
                session=session.model_copy(),
                previousStatus=previous_status,
                previousBranch=previous_branch,
            )
        )
        record_session_event(event_type.value)
        if previous_status is not None and previous_status.status != session.status.status:
            record_status_transition(previous_status.status, session.status.status)


def _branch_for(repo: RepoInfo, logged_branch: str | None) -> str | None:
    # Inside a repository git wins, a detached HEAD included.
    if repo.isGitRepo:
        return repo.branch
    return logged_branch


def _answers_permission(record: Any, permission: HookSignal) -> bool:
    if not has_tool_result(record):
        return False
    asked_at = parse_timestamp(permission.signalledAt)
    answered_at = parse_timestamp(record.timestamp)
    if asked_at is None or answered_at is None:
        return True
    return answered_at >= asked_at
