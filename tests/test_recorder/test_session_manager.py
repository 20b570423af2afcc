"""
SessionManager テスト — 記録セッションのライフサイクルとイベント受理

状態遷移、ブラウザ設定の検証、シーケンス番号の連続性、
停止の冪等性、STOP の通知を検証する。
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from loom.errors import InvalidConfigError, SessionStateError
from loom.models import BrowserContextInfo, SessionStatus
from loom.recorder.session_manager import SessionManager
from loom.recorder.session_store import InMemorySessionStore

from conftest import make_event, sequence_arrivals


# ---------------------------------------------------------------------------
# 開始
# ---------------------------------------------------------------------------

class TestStart:
    """start() のテスト。"""

    @pytest.mark.asyncio
    async def test_creates_starting_session(self):
        """開始直後のセッションは Starting であること。"""
        manager = SessionManager()
        session_id = await manager.start("project-1", {"browserType": "firefox", "headless": True})
        session = manager.get_session(session_id)
        assert session.status == SessionStatus.STARTING
        assert session.project_id == "project-1"
        assert session.browser_config.browser_type == "firefox"
        assert session.browser_context.browser_type == "firefox"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("config", [
        {"browserType": "netscape"},
        {"viewportWidth": -1},
        {"baseUrl": "file:///etc/passwd"},
    ])
    async def test_invalid_browser_config(self, config):
        """不正なブラウザ設定ではセッションを作成しないこと。"""
        manager = SessionManager()
        with pytest.raises(InvalidConfigError):
            await manager.start("project-1", config)
        assert manager.list_sessions() == []

    @pytest.mark.asyncio
    async def test_empty_project_id(self):
        with pytest.raises(InvalidConfigError):
            await SessionManager().start("  ")

    @pytest.mark.asyncio
    async def test_shared_store(self):
        """注入したストアにセッションが保持されること。"""
        store = InMemorySessionStore()
        session_id = await SessionManager(store).start("p")
        assert store.ids() == [session_id]
        assert SessionManager(store).has_session(session_id)


# ---------------------------------------------------------------------------
# 状態遷移
# ---------------------------------------------------------------------------

class TestTransitions:
    """状態遷移のテスト。"""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self):
        """Starting → Recording → Completed の順に遷移すること。"""
        manager = SessionManager()
        session_id = await manager.start("p")
        last = manager.confirm_ready(session_id, BrowserContextInfo(user_agent="UA"))
        assert last == 0
        assert manager.status(session_id) == SessionStatus.RECORDING
        assert manager.get_session(session_id).browser_context.user_agent == "UA"

        session = await manager.stop(session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.end_time is not None

    @pytest.mark.asyncio
    async def test_confirm_ready_is_idempotent(self):
        """再接続による INIT では状態が変わらないこと。"""
        manager = SessionManager()
        session_id = await manager.start("p")
        manager.confirm_ready(session_id)
        manager.ingest_event(session_id, make_event(1))
        assert manager.confirm_ready(session_id) == 1
        assert manager.status(session_id) == SessionStatus.RECORDING

    @pytest.mark.asyncio
    async def test_confirm_ready_after_stop(self):
        """停止後の INIT は SessionStateError になること。"""
        manager = SessionManager()
        session_id = await manager.start("p")
        await manager.stop(session_id)
        with pytest.raises(SessionStateError):
            manager.confirm_ready(session_id)

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        """停止を繰り返しても結果が変わらず、STOP は 1 回だけ送信されること。"""
        notifier = AsyncMock()
        manager = SessionManager(notifier=notifier)
        session_id = await manager.start("p")
        manager.confirm_ready(session_id)
        first = await manager.stop(session_id)
        second = await manager.stop(session_id)
        assert first.status == second.status == SessionStatus.COMPLETED
        assert first.end_time == second.end_time
        notifier.send_stop.assert_awaited_once_with(session_id, "stopped")

    @pytest.mark.asyncio
    async def test_stop_survives_notifier_failure(self):
        """STOP の送信に失敗しても Completed になること。"""
        notifier = AsyncMock()
        notifier.send_stop.side_effect = OSError("gone")
        manager = SessionManager(notifier=notifier)
        session_id = await manager.start("p")
        assert (await manager.stop(session_id)).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_fail_is_terminal(self):
        """Error へ遷移した後は停止しても Error のままであること。"""
        manager = SessionManager()
        session_id = await manager.start("p")
        manager.fail(session_id, "注入に失敗しました")
        session = await manager.stop(session_id)
        assert session.status == SessionStatus.ERROR
        assert session.error == "注入に失敗しました"
        manager.fail(session_id, "second")
        assert manager.get_session(session_id).error == "注入に失敗しました"

    @pytest.mark.asyncio
    async def test_returned_session_is_a_copy(self):
        """返されたセッションを変更しても内部状態に影響しないこと。"""
        manager = SessionManager()
        session_id = await manager.start("p")
        manager.confirm_ready(session_id)
        manager.ingest_event(session_id, make_event(1))
        copy = manager.get_session(session_id)
        copy.events.clear()
        copy.status = SessionStatus.ERROR
        assert len(manager.get_events(session_id)) == 1
        assert manager.status(session_id) == SessionStatus.RECORDING

    def test_unknown_session(self):
        manager = SessionManager()
        with pytest.raises(KeyError):
            manager.get_session("missing")
        with pytest.raises(KeyError):
            manager.ingest_event("missing", make_event(1))

    @pytest.mark.asyncio
    async def test_discard(self):
        manager = SessionManager()
        session_id = await manager.start("p")
        assert manager.discard(session_id) is True
        assert manager.discard(session_id) is False
        assert not manager.has_session(session_id)


# ---------------------------------------------------------------------------
# イベント受理
# ---------------------------------------------------------------------------

class TestIngest:
    """イベント受理のテスト。"""

    @pytest.mark.asyncio
    async def test_accepts_contiguous_events(self):
        manager = SessionManager()
        session_id = await manager.start("p")
        manager.confirm_ready(session_id)
        assert all(manager.ingest_event(session_id, make_event(seq)) for seq in (1, 2, 3))
        assert [e.sequence_number for e in manager.get_events(session_id)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_rejects_gap_and_duplicate(self):
        """欠番と重複は受理されないこと。"""
        manager = SessionManager()
        session_id = await manager.start("p")
        manager.confirm_ready(session_id)
        manager.ingest_event(session_id, make_event(1))
        assert manager.ingest_event(session_id, make_event(3)) is False
        assert manager.ingest_event(session_id, make_event(1)) is False
        assert manager.last_sequence(session_id) == 1

    @pytest.mark.asyncio
    async def test_buffered_while_starting(self):
        """Starting 中のイベントはバッファされ、準備完了時に反映されること。"""
        manager = SessionManager()
        session_id = await manager.start("p")
        assert manager.ingest_event(session_id, make_event(1)) is True
        assert manager.get_events(session_id) == ()
        assert manager.confirm_ready(session_id) == 1
        assert len(manager.get_events(session_id)) == 1

    @pytest.mark.asyncio
    async def test_buffer_is_drained_on_stop(self):
        """Starting のまま停止した場合もバッファ済みイベントが残ること。"""
        manager = SessionManager()
        session_id = await manager.start("p")
        manager.ingest_event(session_id, make_event(1))
        session = await manager.stop(session_id)
        assert [e.sequence_number for e in session.events] == [1]

    @pytest.mark.asyncio
    async def test_dropped_after_stop(self):
        """停止後に到着したイベントは破棄されること。"""
        manager = SessionManager()
        session_id = await manager.start("p")
        manager.confirm_ready(session_id)
        await manager.stop(session_id)
        assert manager.ingest_event(session_id, make_event(1)) is False
        assert manager.get_events(session_id) == ()

    @settings(max_examples=50, deadline=None)
    @given(arrivals=sequence_arrivals, ready_at=st.integers(min_value=0, max_value=60))
    def test_accepted_events_are_contiguous(self, arrivals, ready_at):
        """どの順序で到着しても受理済みイベントは 1 から欠番なく連続すること。"""
        manager = SessionManager()
        session_id = asyncio.run(manager.start("p"))

        expected = 0
        for index, sequence in enumerate(arrivals):
            if index == ready_at:
                manager.confirm_ready(session_id)
            manager.ingest_event(session_id, make_event(sequence))
            if sequence == expected + 1:
                expected = sequence
        manager.confirm_ready(session_id)

        numbers = [e.sequence_number for e in manager.get_events(session_id)]
        assert numbers == list(range(1, expected + 1))
