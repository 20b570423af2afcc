"""
修復履歴 — 要素ごとの HealingRecord を上限付き FIFO で保持する

追記と破棄はロックの内側でまとめて行うため、並行する再生タスクから
同時に追記されても上限を超えることはない。
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Optional

from ..models import HealingRecord, LocatorCandidate


class HealingHistory:
    """要素キーごとの修復履歴。"""

    def __init__(self, max_size: int = 100) -> None:
        """HealingHistory を初期化する。

        Args:
            max_size: 要素ごとに保持する記録の上限
        """
        if max_size < 1:
            raise ValueError(f"max_size は 1 以上で指定してください: {max_size}")
        self._max_size = max_size
        self._records: dict[str, deque[HealingRecord]] = {}
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    def append(self, record: HealingRecord) -> None:
        """記録を追加する。上限を超えた場合は最も古い記録を破棄する。"""
        with self._lock:
            records = self._records.get(record.element_key)
            if records is None:
                records = deque(maxlen=self._max_size)
                self._records[record.element_key] = records
            records.append(record)

    def records(self, element_key: str) -> list[HealingRecord]:
        """要素の記録を古い順に返す。"""
        with self._lock:
            return list(self._records.get(element_key, ()))

    def healed_candidates(self, element_key: str) -> list[LocatorCandidate]:
        """過去に採用された候補を新しい順に返す（重複除去済み）。"""
        seen: set[str] = set()
        result: list[LocatorCandidate] = []
        for record in reversed(self.records(element_key)):
            candidate = record.accepted_candidate
            if candidate is None or candidate.identity_keys() & seen:
                continue
            seen |= candidate.identity_keys()
            result.append(candidate)
        return result

    def latest(self, element_key: str) -> Optional[HealingRecord]:
        with self._lock:
            records = self._records.get(element_key)
            return records[-1] if records else None

    def __len__(self) -> int:
        with self._lock:
            return sum(len(r) for r in self._records.values())

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
