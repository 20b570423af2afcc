"""
Recording Session Manager — 記録セッションのライフサイクル管理

セッションの状態遷移とイベントの受理を管理する。
セッションの状態は注入された SessionStore に保持し、外部には複製を返す。

状態遷移:
  Idle → Starting → Recording → Stopping → Completed
  Completed / Error 以外の状態からは Error へ遷移できる。
  Completed / Error から他の状態へは遷移しない。

主な機能:
  - start: ブラウザ設定を検証してセッションを Starting で作成
  - confirm_ready: エージェントの INIT 受信で Recording へ遷移
  - ingest_event: シーケンス番号が連続するイベントのみを受理
  - stop: バッファを反映して STOP を送信し Completed へ遷移（冪等）
  - fail: エラー理由を記録して Error へ遷移
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol

from pydantic import ValidationError

from ..errors import InvalidConfigError, SessionStateError
from ..models import (
    BrowserConfig,
    BrowserContextInfo,
    RecordedEvent,
    RecordingSession,
    SessionStatus,
)
from .session_store import InMemorySessionStore, SessionEntry, SessionStore

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.STARTING, SessionStatus.ERROR}),
    SessionStatus.STARTING: frozenset({
        SessionStatus.RECORDING, SessionStatus.STOPPING, SessionStatus.ERROR,
    }),
    SessionStatus.RECORDING: frozenset({SessionStatus.STOPPING, SessionStatus.ERROR}),
    SessionStatus.STOPPING: frozenset({SessionStatus.COMPLETED, SessionStatus.ERROR}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.ERROR: frozenset(),
}


class ChannelNotifier(Protocol):
    """セッションのチャネルへ制御メッセージを送る相手。"""

    async def send_stop(self, session_id: str, reason: str) -> None:
        ...


class SessionManager:
    """記録セッションを管理する。

    使用例::

        manager = SessionManager()
        session_id = await manager.start("project-1", {"browserType": "chromium"})
        manager.confirm_ready(session_id)
        manager.ingest_event(session_id, event)
        session = await manager.stop(session_id)
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        notifier: Optional[ChannelNotifier] = None,
    ) -> None:
        """SessionManager を初期化する。

        Args:
            store: セッションストア（省略時は InMemorySessionStore）
            notifier: STOP を送信するチャネル（attach_channel で後から設定可能）
        """
        self._store = store if store is not None else InMemorySessionStore()
        self._notifier = notifier

    @property
    def store(self) -> SessionStore:
        return self._store

    def attach_channel(self, notifier: Optional[ChannelNotifier]) -> None:
        self._notifier = notifier

    # -------------------------------------------------------------------
    # ライフサイクル
    # -------------------------------------------------------------------

    async def start(
        self,
        project_id: str,
        browser_config: BrowserConfig | Mapping[str, Any] | None = None,
    ) -> str:
        """記録セッションを開始する。

        セッションは Starting で作成され、エージェントの INIT 受信時に
        Recording へ遷移する。検証に失敗した場合はセッションを作成しない。

        Args:
            project_id: プロジェクト ID
            browser_config: ブラウザ設定（辞書の場合は検証して変換）

        Returns:
            セッション ID

        Raises:
            InvalidConfigError: project_id が空、またはブラウザ設定が不正な場合
        """
        if not project_id or not project_id.strip():
            raise InvalidConfigError("project_id を指定してください")

        if browser_config is None:
            config = BrowserConfig()
        elif isinstance(browser_config, BrowserConfig):
            config = browser_config
        else:
            try:
                config = BrowserConfig.model_validate(dict(browser_config))
            except ValidationError as exc:
                raise InvalidConfigError(f"ブラウザ設定が不正です: {exc}") from exc

        session = RecordingSession(
            id=uuid.uuid4().hex,
            project_id=project_id.strip(),
            browser_config=config,
            browser_context=BrowserContextInfo(browser_type=config.browser_type),
        )
        entry = SessionEntry(session=session)
        self._transition(entry, SessionStatus.STARTING)
        self._store.create(entry)
        logger.info("記録セッションを開始しました: %s (project=%s)", session.id, session.project_id)
        return session.id

    def confirm_ready(
        self,
        session_id: str,
        browser_context: Optional[BrowserContextInfo] = None,
    ) -> int:
        """エージェントの準備完了を受けて Recording へ遷移する。

        Starting 中にバッファしたイベントを受理順に反映する。
        既に Recording の場合（再接続）は状態を変えない。

        Args:
            session_id: セッション ID
            browser_context: エージェントから通知されたブラウザ情報

        Returns:
            最後に受理したシーケンス番号

        Raises:
            KeyError: セッションが存在しない場合
            SessionStateError: Recording へ遷移できない状態の場合
        """
        entry = self._require(session_id)
        with entry.lock:
            if browser_context is not None:
                entry.session.browser_context = browser_context
            if entry.session.status == SessionStatus.STARTING:
                self._transition(entry, SessionStatus.RECORDING)
                self._drain(entry)
                logger.info("記録を開始しました: %s", session_id)
            elif entry.session.status != SessionStatus.RECORDING:
                raise SessionStateError(
                    f"{entry.session.status.value} のセッションは記録を開始できません: {session_id}"
                )
            return entry.last_sequence

    async def stop(self, session_id: str, reason: str = "stopped") -> RecordingSession:
        """記録セッションを停止する。

        バッファ済みのイベントを反映し、Stopping を経て Completed へ遷移する。
        既に停止中・停止済みの場合は何もしない。

        Args:
            session_id: セッション ID
            reason: STOP メッセージに含める理由

        Returns:
            停止後のセッションの複製

        Raises:
            KeyError: セッションが存在しない場合
        """
        entry = self._require(session_id)
        with entry.lock:
            status = entry.session.status
            if status in (SessionStatus.STOPPING, SessionStatus.COMPLETED, SessionStatus.ERROR):
                logger.debug("セッションは既に停止しています: %s (%s)", session_id, status.value)
                return entry.session.model_copy(deep=True)
            self._drain(entry)
            self._transition(entry, SessionStatus.STOPPING)

        if self._notifier is not None:
            try:
                await self._notifier.send_stop(session_id, reason)
            except Exception as exc:
                logger.warning("STOP の送信に失敗しました: %s (%s)", session_id, exc)

        with entry.lock:
            if entry.session.status == SessionStatus.STOPPING:
                entry.session.end_time = datetime.now(timezone.utc)
                self._transition(entry, SessionStatus.COMPLETED)
                logger.info(
                    "記録セッションを終了しました: %s (%d イベント)",
                    session_id, len(entry.session.events),
                )
            return entry.session.model_copy(deep=True)

    def fail(self, session_id: str, reason: str) -> None:
        """セッションを Error へ遷移させる。

        終了済みのセッションに対しては何もしない。
        """
        entry = self._require(session_id)
        with entry.lock:
            if entry.session.status.is_terminal:
                return
            entry.session.error = reason
            entry.session.end_time = datetime.now(timezone.utc)
            entry.buffered.clear()
            self._transition(entry, SessionStatus.ERROR)
        logger.error("記録セッションがエラーで終了しました: %s (%s)", session_id, reason)

    def discard(self, session_id: str) -> bool:
        """ストアからセッションを削除する。"""
        removed = self._store.delete(session_id)
        if removed:
            logger.debug("セッションを削除しました: %s", session_id)
        return removed

    # -------------------------------------------------------------------
    # イベント受理
    # -------------------------------------------------------------------

    def ingest_event(self, session_id: str, event: RecordedEvent) -> bool:
        """イベントを受理する。

        シーケンス番号が直前の受理番号 + 1 の場合のみ受理し、
        それ以外は並べ替えずに破棄する。Starting 中はバッファし、
        Stopping / Completed / Error では破棄する。

        Args:
            session_id: セッション ID
            event: 受信したイベント

        Returns:
            受理（またはバッファ）した場合は True

        Raises:
            KeyError: セッションが存在しない場合
        """
        entry = self._require(session_id)
        with entry.lock:
            status = entry.session.status
            if status == SessionStatus.STARTING:
                expected = entry.last_sequence + len(entry.buffered) + 1
                if event.sequence_number != expected:
                    logger.warning(
                        "連続しないイベントを破棄しました: %s seq=%d (期待値 %d)",
                        session_id, event.sequence_number, expected,
                    )
                    return False
                entry.buffered.append(event)
                return True

            if status != SessionStatus.RECORDING:
                logger.warning(
                    "%s のセッションへのイベントを破棄しました: %s seq=%d",
                    status.value, session_id, event.sequence_number,
                )
                return False

            return self._append(entry, event)

    def _append(self, entry: SessionEntry, event: RecordedEvent) -> bool:
        expected = entry.last_sequence + 1
        if event.sequence_number != expected:
            level = logging.DEBUG if event.sequence_number <= entry.last_sequence else logging.WARNING
            logger.log(
                level, "連続しないイベントを破棄しました: %s seq=%d (期待値 %d)",
                entry.session.id, event.sequence_number, expected,
            )
            return False
        entry.session.events.append(event)
        entry.last_sequence = event.sequence_number
        logger.debug(
            "イベントを受理しました: %s seq=%d %s",
            entry.session.id, event.sequence_number, event.type.value,
        )
        return True

    def _drain(self, entry: SessionEntry) -> None:
        buffered, entry.buffered = entry.buffered, []
        for event in buffered:
            self._append(entry, event)

    # -------------------------------------------------------------------
    # 参照
    # -------------------------------------------------------------------

    def get_session(self, session_id: str) -> RecordingSession:
        """セッションの複製を返す。

        Raises:
            KeyError: セッションが存在しない場合
        """
        entry = self._require(session_id)
        with entry.lock:
            return entry.session.model_copy(deep=True)

    def get_events(self, session_id: str) -> tuple[RecordedEvent, ...]:
        """受理済みイベントのスナップショットを返す。"""
        entry = self._require(session_id)
        with entry.lock:
            return tuple(entry.session.events)

    def last_sequence(self, session_id: str) -> int:
        entry = self._require(session_id)
        with entry.lock:
            return entry.last_sequence

    def status(self, session_id: str) -> SessionStatus:
        entry = self._require(session_id)
        with entry.lock:
            return entry.session.status

    def has_session(self, session_id: str) -> bool:
        return self._store.get(session_id) is not None

    def list_sessions(self) -> list[RecordingSession]:
        sessions = []
        for entry in self._store:
            with entry.lock:
                sessions.append(entry.session.model_copy(deep=True))
        return sessions

    # -------------------------------------------------------------------
    # 内部処理
    # -------------------------------------------------------------------

    def _require(self, session_id: str) -> SessionEntry:
        entry = self._store.get(session_id)
        if entry is None:
            raise KeyError(f"セッションが存在しません: {session_id}")
        return entry

    @staticmethod
    def _transition(entry: SessionEntry, new_status: SessionStatus) -> None:
        current = entry.session.status
        if new_status not in _TRANSITIONS[current]:
            raise SessionStateError(
                f"不正な状態遷移です: {current.value} → {new_status.value} ({entry.session.id})"
            )
        entry.session.status = new_status
        logger.debug("状態遷移: %s %s → %s", entry.session.id, current.value, new_status.value)
