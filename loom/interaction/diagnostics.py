"""
診断情報の保存 — 要素解決失敗時のスクリーンショットと DOM スナップショット

<base_dir>/<YYYYMMDD-HHMMSS>-<label>/ に screenshot.png と dom.html を保存する。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^\w\-]")


def _sanitize_label(label: str) -> str:
    """ディレクトリ名に使用できない文字をハイフンに置換する。"""
    sanitized = _UNSAFE_CHARS.sub("-", label).strip("-")
    return sanitized[:60] or "element"


@dataclass
class DiagnosticsWriter:
    """診断情報の保存先。

    Attributes:
        base_dir: 保存先のベースディレクトリ
        screenshot: スクリーンショットを保存するか
    """

    base_dir: Path = field(default_factory=lambda: Path("artifacts/diagnostics"))
    screenshot: bool = True

    async def save(
        self,
        page: Page,
        label: str,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Path]:
        """スクリーンショットと DOM スナップショットを保存する。

        保存に失敗しても例外は送出せず、警告を記録して None を返す。

        Args:
            page: Playwright の Page オブジェクト
            label: 対象要素を表すラベル
            timestamp: ディレクトリ名に使用する時刻（省略時は現在時刻）

        Returns:
            保存したディレクトリのパス
        """
        ts = (timestamp or datetime.now()).strftime("%Y%m%d-%H%M%S")
        target_dir = Path(self.base_dir) / f"{ts}-{_sanitize_label(label)}"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            html = await page.content()
            (target_dir / "dom.html").write_text(html, encoding="utf-8")
            if self.screenshot:
                await page.screenshot(path=str(target_dir / "screenshot.png"), full_page=True)
        except Exception as exc:
            logger.warning("診断情報の保存に失敗しました: %s (%s)", target_dir, exc)
            return None
        logger.info("診断情報を保存しました: %s", target_dir)
        return target_dir
