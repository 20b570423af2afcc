"""
エラー定義 — loom 全体で共有する例外クラス

主な機能:
  - LoomError: 全例外の基底クラス
  - ChannelConnectionError: 再接続の試行上限に達した
  - InjectionError: エージェント注入の試行上限に達した
  - LocatorNotFoundError: 全候補を試行しても要素を解決できなかった
  - AmbiguousMatchError: 閾値を超える候補が同点で複数ノードに一致した
  - InvalidConfigError: 設定値・ブラウザ設定の検証失敗
"""

from __future__ import annotations

from typing import Sequence


class LoomError(Exception):
    """loom の例外基底クラス。"""


class ChannelConnectionError(LoomError):
    """双方向チャネルの再接続が上限回数に達した場合のエラー。"""


class InjectionError(LoomError):
    """インストルメンテーションエージェントの注入に失敗した場合のエラー。"""


class InvalidConfigError(LoomError, ValueError):
    """設定値が不正な場合のエラー。"""


class SessionStateError(LoomError):
    """セッション状態遷移が不正な場合のエラー。"""


class InteractionError(LoomError):
    """要素操作が再試行・タイムアウトの上限内に完了しなかった場合のエラー。"""


class ExportQueueFull(LoomError):
    """エクスポートキューが満杯で新しいジョブを受け付けられない場合のエラー。"""


class LocatorNotFoundError(LoomError):
    """要素の解決に失敗した場合のエラー。

    Attributes:
        element_key: 対象要素のキー
        attempts: 試行した候補とスコアの組（(説明, スコア or None)）
    """

    def __init__(
        self,
        element_key: str,
        attempts: Sequence[tuple[str, float | None]] = (),
        reason: str = "",
    ) -> None:
        self.element_key = element_key
        self.attempts = list(attempts)
        lines = [f"要素を解決できませんでした: {element_key}"]
        if reason:
            lines[0] += f"（{reason}）"
        for desc, score in self.attempts:
            if score is None:
                lines.append(f"  - {desc}: 一致なし")
            else:
                lines.append(f"  - {desc}: score={score:.3f}")
        super().__init__("\n".join(lines))


class AmbiguousMatchError(LoomError):
    """同点の候補が複数ノードに一致した場合のエラー。

    リゾルバーは送出せず、ログに記録して Resolution に添付する。
    """

    def __init__(self, element_key: str, score: float, candidates: Sequence[str]) -> None:
        self.element_key = element_key
        self.score = score
        self.candidates = list(candidates)
        super().__init__(
            f"同点の候補が複数存在します: {element_key} score={score:.3f} "
            f"候補={', '.join(self.candidates)}"
        )
