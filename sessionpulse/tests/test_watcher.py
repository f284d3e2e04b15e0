import asyncio
import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

from watchfiles import Change

from sessionpulse.models import RepoInfo, SessionEventType, SignalKind, StatusState
from sessionpulse.registry import SessionRegistry
from sessionpulse.signals import SignalStore
from sessionpulse.status_machine import StatusTimeouts
from sessionpulse.watcher import ADDED, MODIFIED, SessionWatcher

SESSION_ID = "5f0c2d1e-8a7b-4c3d-9e2f-112233445566"
BASE = datetime(2026, 2, 16, 10, 0, 0, tzinfo=timezone.utc)
BASE_MS = 1771236000000


def _ts(seconds: float) -> str:
    return (BASE + timedelta(seconds=seconds)).isoformat().replace("+00:00", "Z")


def _prompt(seconds: float, text: str = "fix the login bug", cwd: str = "/work/widgets") -> dict:
    return {
        "type": "user",
        "timestamp": _ts(seconds),
        "sessionId": SESSION_ID,
        "cwd": cwd,
        "gitBranch": "main",
        "message": {"role": "user", "content": text},
    }


def _tool_use(seconds: float, tool_id: str = "toolu_edit", name: str = "Edit") -> dict:
    return {
        "type": "assistant",
        "timestamp": _ts(seconds),
        "message": {
            "role": "assistant",
            "content": [{"type": "tool_use", "id": tool_id, "name": name, "input": {"file_path": "app.py"}}],
        },
    }


def _tool_result(seconds: float, tool_id: str = "toolu_edit") -> dict:
    return {
        "type": "user",
        "timestamp": _ts(seconds),
        "message": {"role": "user", "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": "ok"}]},
    }


def _streaming(seconds: float) -> dict:
    return {
        "type": "assistant",
        "timestamp": _ts(seconds),
        "message": {"role": "assistant", "content": [{"type": "text", "text": "Looking into it"}]},
    }


def _turn_end(seconds: float) -> dict:
    return {"type": "system", "subtype": "turn_duration", "timestamp": _ts(seconds)}


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, seconds: float) -> None:
        self.now = BASE + timedelta(seconds=seconds)


class _FakeResolver:
    def __init__(self, info: RepoInfo | None = None):
        self.info = info or RepoInfo(
            repoUrl="https://github.com/acme/widgets",
            repoId="acme/widgets",
            branch="main",
            isGitRepo=True,
        )
        self.broken: set[str] = set()
        self.invalidated: list[str | None] = []

    async def get(self, cwd: str) -> RepoInfo:
        if cwd in self.broken:
            raise RuntimeError(f"lookup exploded for {cwd}")
        return self.info

    def invalidate(self, cwd: str | None = None) -> None:
        self.invalidated.append(cwd)


class SessionWatcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        root = Path(tmpdir.name)
        self.projects_dir = root / "projects"
        self.signals_dir = root / "session-signals"
        (self.projects_dir / "-work-widgets").mkdir(parents=True)
        self.signals_dir.mkdir()
        self.log_path = self.projects_dir / "-work-widgets" / f"{SESSION_ID}.jsonl"

        self.clock = _Clock(BASE + timedelta(seconds=1))
        self.resolver = _FakeResolver()
        self.registry = SessionRegistry()
        self.watcher = SessionWatcher(
            self.registry,
            SignalStore(self.signals_dir),
            self.resolver,
            projects_dir=self.projects_dir,
            debounce_ms=20,
            stale_check_interval=60,
            timeouts=StatusTimeouts(),
            clock=self.clock,
        )

    def _append(self, *payloads: dict, path: Path | None = None) -> None:
        target = path or self.log_path
        with target.open("a", encoding="utf-8") as handle:
            for payload in payloads:
                handle.write(json.dumps(payload) + "\n")

    def _write_permission(self, pending_since_ms: int, tool_name: str = "Edit") -> Path:
        path = self.signals_dir / f"{SESSION_ID}.permission.json"
        path.write_text(
            json.dumps({
                "session_id": SESSION_ID,
                "tool_name": tool_name,
                "tool_input": {"file_path": "app.py"},
                "pending_since": str(pending_since_ms),
            }),
            encoding="utf-8",
        )
        return path

    def _drain(self) -> list:
        events = []
        while not self.watcher.events.empty():
            events.append(self.watcher.events.get_nowait())
        return events

    async def _start_working_with_tool(self) -> None:
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        self._append(_tool_use(1))
        self.clock.set(2)
        await self.watcher.handle_file(self.log_path, MODIFIED)
        self._drain()

    # ── Status scenarios ───────────────────────────────────────────

    async def test_empty_log_creates_no_session(self) -> None:
        self.log_path.touch()

        await self.watcher.handle_file(self.log_path, ADDED)

        self.assertEqual(len(self.registry), 0)
        self.assertEqual(self._drain(), [])

    async def test_prompt_creates_working_session(self) -> None:
        self._append(_prompt(0))

        await self.watcher.handle_file(self.log_path, ADDED)

        session = self.registry.get(SESSION_ID)
        assert session is not None
        self.assertEqual(session.status.status, "working")
        self.assertEqual(session.status.messageCount, 1)
        self.assertEqual(session.originalPrompt, "fix the login bug")
        self.assertEqual(session.encodedDir, "-work-widgets")
        self.assertEqual(session.gitRepoId, "acme/widgets")
        self.assertEqual(session.gitBranch, "main")
        self.assertEqual(session.bytePosition, self.log_path.stat().st_size)

        events = self._drain()
        self.assertEqual([e.type for e in events], [SessionEventType.CREATED])
        self.assertIsNone(events[0].previousStatus)

    async def test_tool_use_is_working_then_waits_after_approval_timeout(self) -> None:
        await self._start_working_with_tool()

        session = self.registry.get(SESSION_ID)
        self.assertEqual(session.status.status, "working")
        self.assertTrue(session.status.hasPendingToolUse)
        self.assertEqual(session.machine.context.pendingToolIds, ["toolu_edit"])

        self.clock.set(8)
        changed = self.watcher.check_stale_sessions()

        self.assertEqual(changed, 1)
        self.assertEqual(session.status.status, "waiting")
        self.assertTrue(session.status.hasPendingToolUse)
        self.assertEqual(session.status.machineState, StatusState.WAITING_FOR_APPROVAL)
        events = self._drain()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].previousStatus.status, "working")

        self.assertEqual(self.watcher.check_stale_sessions(), 0)

    async def test_tool_result_and_turn_end(self) -> None:
        await self._start_working_with_tool()

        self._append(_tool_result(3))
        self.clock.set(4)
        await self.watcher.handle_file(self.log_path, MODIFIED)
        session = self.registry.get(SESSION_ID)
        self.assertEqual(session.status.status, "working")
        self.assertFalse(session.status.hasPendingToolUse)

        self._append(_turn_end(5))
        self.clock.set(6)
        await self.watcher.handle_file(self.log_path, MODIFIED)
        self.assertEqual(session.status.status, "waiting")
        self.assertFalse(session.status.hasPendingToolUse)
        self.assertEqual(session.status.machineState, StatusState.WAITING_FOR_INPUT)

        events = self._drain()
        self.assertEqual([e.type for e in events], [SessionEventType.UPDATED, SessionEventType.UPDATED])
        self.assertEqual(events[-1].previousStatus.status, "working")

    async def test_stale_working_session_falls_back_to_waiting(self) -> None:
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        self._drain()

        self.clock.set(62)
        self.assertEqual(self.watcher.check_stale_sessions(), 1)

        session = self.registry.get(SESSION_ID)
        self.assertEqual(session.status.status, "waiting")
        self.assertFalse(session.status.hasPendingToolUse)

    async def test_unchanged_log_publishes_nothing(self) -> None:
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        self._drain()

        await self.watcher.handle_file(self.log_path, MODIFIED)

        self.assertEqual(self._drain(), [])

    async def test_partial_line_waits_for_completion(self) -> None:
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        self._drain()
        position = self.registry.get(SESSION_ID).bytePosition

        line = json.dumps(_tool_use(1)) + "\n"
        with self.log_path.open("a", encoding="utf-8") as handle:
            handle.write(line[:40])
        await self.watcher.handle_file(self.log_path, MODIFIED)
        self.assertEqual(self.registry.get(SESSION_ID).bytePosition, position)
        self.assertEqual(self._drain(), [])

        with self.log_path.open("a", encoding="utf-8") as handle:
            handle.write(line[40:])
        await self.watcher.handle_file(self.log_path, MODIFIED)
        session = self.registry.get(SESSION_ID)
        self.assertTrue(session.status.hasPendingToolUse)
        self.assertEqual(session.bytePosition, self.log_path.stat().st_size)

    async def test_session_waits_for_metadata_without_rereading(self) -> None:
        with self.log_path.open("a", encoding="utf-8") as handle:
            handle.write("{truncated garbage\n")
        self._append(_streaming(0))

        with self.assertLogs("sessionpulse.reader", level="WARNING"):
            await self.watcher.handle_file(self.log_path, ADDED)
        self.assertEqual(len(self.registry), 0)

        self._append(_prompt(1))
        self.clock.set(2)
        with self.assertNoLogs("sessionpulse.reader", level="WARNING"):
            await self.watcher.handle_file(self.log_path, MODIFIED)

        session = self.registry.get(SESSION_ID)
        assert session is not None
        self.assertEqual(len(session.records), 2)
        self.assertEqual(session.status.status, "working")
        self.assertEqual(session.status.messageCount, 1)

    async def test_delete_removes_session(self) -> None:
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        self._drain()

        self.log_path.unlink()
        await self.watcher.handle_delete(self.log_path)

        self.assertNotIn(SESSION_ID, self.registry)
        events = self._drain()
        self.assertEqual([e.type for e in events], [SessionEventType.DELETED])
        self.assertEqual(events[0].session.sessionId, SESSION_ID)

    async def test_vanished_log_is_ignored(self) -> None:
        with self.assertNoLogs("sessionpulse.watcher", level="ERROR"):
            await self.watcher.handle_file(self.log_path, ADDED)
        self.assertEqual(len(self.registry), 0)

    async def test_failure_in_one_log_does_not_affect_others(self) -> None:
        broken_dir = self.projects_dir / "-work-broken"
        broken_dir.mkdir()
        broken_path = broken_dir / "0000-broken.jsonl"
        self._append(_prompt(0, cwd="/work/broken"), path=broken_path)
        self.resolver.broken.add("/work/broken")
        self._append(_prompt(0))

        with self.assertLogs("sessionpulse.watcher", level="ERROR"):
            await self.watcher.handle_file(broken_path, ADDED)
        await self.watcher.handle_file(self.log_path, ADDED)

        self.assertNotIn("0000-broken", self.registry)
        self.assertIn(SESSION_ID, self.registry)

        self.resolver.broken.clear()
        await self.watcher.handle_file(broken_path, MODIFIED)
        recovered = self.registry.get("0000-broken")
        assert recovered is not None
        self.assertEqual(len(recovered.records), 1)
        self.assertEqual(recovered.bytePosition, broken_path.stat().st_size)

    async def test_failed_update_rereads_records_on_next_change(self) -> None:
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        session = self.registry.get(SESSION_ID)
        position = session.bytePosition

        self.resolver.broken.add("/work/widgets")
        self._append(_tool_use(1))
        with self.assertLogs("sessionpulse.watcher", level="ERROR"):
            await self.watcher.handle_file(self.log_path, MODIFIED)
        self.assertEqual(session.bytePosition, position)
        self.assertEqual(len(session.records), 1)

        self.resolver.broken.clear()
        self._append(_streaming(2))
        self.clock.set(3)
        await self.watcher.handle_file(self.log_path, MODIFIED)

        self.assertEqual(len(session.records), 3)
        self.assertTrue(session.status.hasPendingToolUse)
        self.assertEqual(session.machine.context.pendingToolIds, ["toolu_edit"])
        self.assertEqual(session.bytePosition, self.log_path.stat().st_size)

    async def test_queued_events_keep_their_own_snapshot(self) -> None:
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        self._append(_turn_end(1))
        self.clock.set(2)
        await self.watcher.handle_file(self.log_path, MODIFIED)

        created, updated = self._drain()

        self.assertEqual(created.type, SessionEventType.CREATED)
        self.assertEqual(created.session.status.status, "working")
        self.assertEqual(updated.previousStatus.status, "working")
        self.assertEqual(updated.session.status.status, "waiting")
        self.assertIsNot(created.session, updated.session)
        self.assertIsNot(updated.session, self.registry.get(SESSION_ID))

    # ── Repository and branch ──────────────────────────────────────

    async def test_branch_change_is_published(self) -> None:
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        self._drain()

        self.resolver.info = self.resolver.info.model_copy(update={"branch": "feature/login"})
        self._append(_streaming(1))
        self.clock.set(2)
        await self.watcher.handle_file(self.log_path, MODIFIED)

        session = self.registry.get(SESSION_ID)
        self.assertEqual(session.gitBranch, "feature/login")
        self.assertTrue(session.branchChanged)
        events = self._drain()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].previousBranch, "main")

    async def test_non_repository_keeps_logged_branch(self) -> None:
        self.resolver.info = RepoInfo()
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        self._append(_streaming(1))
        self.clock.set(2)
        await self.watcher.handle_file(self.log_path, MODIFIED)

        session = self.registry.get(SESSION_ID)
        self.assertEqual(session.gitBranch, "main")
        self.assertFalse(session.branchChanged)
        self.assertIsNone(session.gitRepoId)

    async def test_detached_head_is_stable_across_updates(self) -> None:
        self.resolver.info = RepoInfo(
            repoUrl="https://github.com/acme/widgets",
            repoId="acme/widgets",
            branch=None,
            isGitRepo=True,
        )
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        session = self.registry.get(SESSION_ID)
        self.assertIsNone(session.gitBranch)
        self._drain()

        self._append(_streaming(1))
        self.clock.set(2)
        await self.watcher.handle_file(self.log_path, MODIFIED)

        self.assertIsNone(session.gitBranch)
        self.assertFalse(session.branchChanged)
        self.assertEqual(self._drain(), [])

    # ── Permission signals ─────────────────────────────────────────

    async def test_permission_signal_overrides_status(self) -> None:
        await self._start_working_with_tool()
        signal_path = self._write_permission(BASE_MS + 1500)

        self.watcher.handle_signal_written(signal_path)

        session = self.registry.get(SESSION_ID)
        self.assertEqual(session.status.status, "waiting")
        self.assertTrue(session.status.hasPendingToolUse)
        self.assertEqual(session.pendingPermission.toolName, "Edit")
        events = self._drain()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].previousStatus.status, "working")

        self.watcher.handle_signal_written(signal_path)
        self.assertEqual(self._drain(), [])

    async def test_later_tool_result_clears_permission(self) -> None:
        await self._start_working_with_tool()
        signal_path = self._write_permission(BASE_MS + 1500)
        self.watcher.handle_signal_written(signal_path)
        self._drain()

        self._append(_tool_result(3))
        self.clock.set(4)
        await self.watcher.handle_file(self.log_path, MODIFIED)

        session = self.registry.get(SESSION_ID)
        self.assertIsNone(session.pendingPermission)
        self.assertFalse(signal_path.exists())
        self.assertEqual(session.status.status, "working")
        self.assertFalse(session.status.hasPendingToolUse)
        events = self._drain()
        self.assertEqual(events[-1].previousStatus.status, "waiting")

    async def test_earlier_tool_result_keeps_permission(self) -> None:
        await self._start_working_with_tool()
        signal_path = self._write_permission(BASE_MS + 10_000, tool_name="Bash")
        self.watcher.handle_signal_written(signal_path)

        self._append(_tool_result(3))
        self.clock.set(4)
        await self.watcher.handle_file(self.log_path, MODIFIED)

        session = self.registry.get(SESSION_ID)
        self.assertIsNotNone(session.pendingPermission)
        self.assertTrue(signal_path.exists())
        self.assertEqual(session.status.status, "waiting")
        self.assertTrue(session.status.hasPendingToolUse)

    async def test_removed_permission_restores_log_status(self) -> None:
        await self._start_working_with_tool()
        signal_path = self._write_permission(BASE_MS + 1500)
        self.watcher.handle_signal_written(signal_path)
        self._drain()

        signal_path.unlink()
        self.watcher.handle_signal_removed(signal_path)

        session = self.registry.get(SESSION_ID)
        self.assertIsNone(session.pendingPermission)
        self.assertEqual(session.status.status, "working")
        self.assertTrue(session.status.hasPendingToolUse)
        self.assertEqual(len(self._drain()), 1)

    async def test_hook_signals_are_tracked_on_the_session(self) -> None:
        stop_path = self.signals_dir / f"{SESSION_ID}.stop.json"
        stop_path.write_text(json.dumps({"session_id": SESSION_ID, "stopped_at": str(BASE_MS)}), encoding="utf-8")
        self.watcher.handle_signal_written(stop_path)
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        session = self.registry.get(SESSION_ID)
        self.assertEqual(session.signals, [SignalKind.STOP])
        self._drain()

        working_path = self.signals_dir / f"{SESSION_ID}.working.json"
        working_path.write_text(json.dumps({"session_id": SESSION_ID, "working_since": str(BASE_MS)}), encoding="utf-8")
        self.watcher.handle_signal_written(working_path)
        self.assertEqual(session.signals, [SignalKind.STOP, SignalKind.WORKING])
        self.assertEqual(self.resolver.invalidated, ["/work/widgets"])

        stop_path.unlink()
        self.watcher.handle_signal_removed(stop_path)
        self.assertEqual(session.signals, [SignalKind.WORKING])
        self.assertEqual(session.status.status, "working")
        self.assertEqual(self._drain(), [])

    async def test_permission_written_before_session_applies_on_creation(self) -> None:
        self.watcher.handle_signal_written(self._write_permission(BASE_MS + 500))
        self.assertEqual(self._drain(), [])

        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)

        session = self.registry.get(SESSION_ID)
        self.assertEqual(session.status.status, "waiting")
        self.assertTrue(session.status.hasPendingToolUse)
        self.assertIsNotNone(session.pendingPermission)

    # ── Change dispatch ────────────────────────────────────────────

    async def test_modifications_are_debounced_per_file(self) -> None:
        self.watcher._running = True
        with patch.object(self.watcher, "handle_file", new=AsyncMock()) as handle_file:
            for _ in range(3):
                self.watcher.dispatch_session_change(Change.modified, self.log_path)
            await asyncio.sleep(0.1)

        handle_file.assert_awaited_once_with(self.log_path, MODIFIED)

    async def test_added_files_are_processed_immediately(self) -> None:
        self.watcher._running = True
        self.log_path.touch()
        with patch.object(self.watcher, "handle_file", new=AsyncMock()) as handle_file:
            self.watcher.dispatch_session_change(Change.modified, self.log_path)
            self.watcher.dispatch_session_change(Change.added, self.log_path)
            # deleted-then-recreated within one batch
            self.watcher.dispatch_session_change(Change.deleted, self.log_path)
            await asyncio.sleep(0.1)

        self.assertEqual(handle_file.await_count, 2)
        for call in handle_file.await_args_list:
            self.assertEqual(call.args, (self.log_path, ADDED))

    async def test_deleted_event_removes_session(self) -> None:
        self._append(_prompt(0))
        await self.watcher.handle_file(self.log_path, ADDED)
        self._drain()

        self.log_path.unlink()
        self.watcher.dispatch_session_change(Change.deleted, self.log_path)
        await asyncio.gather(*list(self.watcher._inflight))

        self.assertNotIn(SESSION_ID, self.registry)

    async def test_stop_cancels_pending_debounce(self) -> None:
        self.watcher._running = True
        with patch.object(self.watcher, "handle_file", new=AsyncMock()) as handle_file:
            self.watcher.dispatch_session_change(Change.modified, self.log_path)
            await self.watcher.stop()
            await asyncio.sleep(0.1)

        handle_file.assert_not_awaited()
        self.assertFalse(self.watcher.is_running)

    async def test_start_loads_signals_then_existing_logs(self) -> None:
        self._write_permission(BASE_MS + 500)
        self._append(_prompt(0))
        subagent_path = self.log_path.with_name("agent-a1b2c3.jsonl")
        self._append(_prompt(0), path=subagent_path)

        await self.watcher.start()
        try:
            self.assertTrue(self.watcher.is_running)
            self.assertEqual(len(self.registry), 1)
            session = self.registry.get(SESSION_ID)
            self.assertEqual(session.status.status, "waiting")
            self.assertIsNotNone(session.pendingPermission)
            self.assertEqual([e.type for e in self._drain()], [SessionEventType.CREATED])
        finally:
            await self.watcher.stop()

        self.assertFalse(self.watcher.is_running)
        self.assertIsNone(self.watcher.failure)


if __name__ == "__main__":
    unittest.main()
