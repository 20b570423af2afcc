"""
セッションストア — 記録セッションの保持領域

SessionManager・チャネルエンドポイント・MCP サーバーに明示的に渡して共有する。
作成と破棄は呼び出し側が明示的に行う。
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterator, Optional

from ..models import RecordedEvent, RecordingSession


@dataclass
class SessionEntry:
    """ストアに保持するセッションと付随する可変状態。

    Attributes:
        session: 記録セッション
        last_sequence: 最後に受理したシーケンス番号
        buffered: Starting 中に到着したイベント（受理順）
        lock: エントリの更新を保護するロック
    """

    session: RecordingSession
    last_sequence: int = 0
    buffered: list[RecordedEvent] = field(default_factory=list)
    lock: threading.RLock = field(default_factory=threading.RLock)


class SessionStore(ABC):
    """セッションストアの抽象基底クラス。"""

    @abstractmethod
    def create(self, entry: SessionEntry) -> None:
        """エントリを登録する。同じ ID が既に存在する場合は KeyError。"""

    @abstractmethod
    def get(self, session_id: str) -> Optional[SessionEntry]:
        """エントリを返す。存在しない場合は None。"""

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        """エントリを削除する。削除した場合は True。"""

    @abstractmethod
    def ids(self) -> list[str]:
        """登録済みのセッション ID を登録順に返す。"""

    def __iter__(self) -> Iterator[SessionEntry]:
        for session_id in self.ids():
            entry = self.get(session_id)
            if entry is not None:
                yield entry


class InMemorySessionStore(SessionStore):
    """プロセス内の辞書にセッションを保持するストア。"""

    def __init__(self) -> None:
        self._entries: dict[str, SessionEntry] = {}
        self._lock = threading.Lock()

    def create(self, entry: SessionEntry) -> None:
        with self._lock:
            if entry.session.id in self._entries:
                raise KeyError(f"セッションは既に存在します: {entry.session.id}")
            self._entries[entry.session.id] = entry

    def get(self, session_id: str) -> Optional[SessionEntry]:
        with self._lock:
            return self._entries.get(session_id)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._entries.pop(session_id, None) is not None

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._entries)
