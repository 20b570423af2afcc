"""
Playwright DOM アダプター — ライブページに対する LiveDom 実装

ロケーター候補を Playwright のセレクタ文字列に変換し、
一致数の取得・要素情報の取得・ページ内容のスナップショットを行う。
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Sequence

from ..models import ElementInfo, LocatorCandidate, LocatorStrategy
from .dom import MAX_TEXT_LENGTH, DomSnapshot, css_string, normalize_text

if TYPE_CHECKING:
    from playwright.async_api import Locator, Page

logger = logging.getLogger(__name__)

# 要素の属性・テキスト・絶対 XPath を取得するスクリプト
_DESCRIBE_JS = """
(el) => {
  const attrs = {};
  for (const a of el.attributes) attrs[a.name] = a.value;
  const parts = [];
  for (let node = el; node && node.nodeType === 1; node = node.parentNode) {
    const tag = node.tagName.toLowerCase();
    const parent = node.parentNode;
    let seg = tag;
    if (parent && parent.children) {
      const same = Array.from(parent.children).filter(c => c.tagName === node.tagName);
      if (same.length > 1) seg += '[' + (same.indexOf(node) + 1) + ']';
    }
    parts.unshift(seg);
  }
  return {tagName: el.tagName.toLowerCase(), attributes: attrs,
          text: el.textContent || '', xpath: '/' + parts.join('/')};
}
"""


def to_playwright_selector(candidate: LocatorCandidate) -> str:
    """ロケーター候補を Playwright のセレクタ文字列に変換する。

    テキスト系の戦略は空白正規化の規則を揃えるため等価 XPath を使用する。

    Args:
        candidate: ロケーター候補

    Returns:
        page.locator() に渡すセレクタ文字列
    """
    strategy = candidate.strategy
    value = candidate.value
    if strategy == LocatorStrategy.ID:
        return f"[id={css_string(value)}]"
    if strategy == LocatorStrategy.NAME:
        return f"[name={css_string(value)}]"
    if strategy == LocatorStrategy.CSS:
        return f"css={value}"
    if strategy == LocatorStrategy.CLASS_NAME:
        return f".{value}"
    if strategy == LocatorStrategy.TAG_NAME:
        return value
    if strategy == LocatorStrategy.XPATH:
        return f"xpath={value}"
    return f"xpath={candidate.xpath}"


def element_info_from_dict(
    data: dict,
    tracked_attributes: Sequence[str],
) -> ElementInfo:
    """ページから取得した要素データを ElementInfo に変換する。"""
    attrs: dict = data.get("attributes") or {}
    tracked = set(tracked_attributes)
    return ElementInfo(
        tag_name=data.get("tagName") or "unknown",
        id=attrs.get("id") or None,
        name=attrs.get("name") or None,
        class_name=normalize_text(attrs.get("class")) or None,
        text=normalize_text(data.get("text"))[:MAX_TEXT_LENGTH] or None,
        xpath=data.get("xpath") or "",
        attributes={
            k: v for k, v in attrs.items()
            if k in tracked and k not in ("id", "name", "class") and str(v).strip()
        },
    )


class PlaywrightDom:
    """Playwright の Page に対する LiveDom 実装。"""

    def __init__(self, page: Page) -> None:
        self._page = page

    @property
    def page(self) -> Page:
        return self._page

    def locator(self, candidate: LocatorCandidate) -> Locator:
        return self._page.locator(to_playwright_selector(candidate))

    async def count(self, candidate: LocatorCandidate) -> int:
        try:
            return await self.locator(candidate).count()
        except Exception as exc:
            # 不正なセレクタは一致なしとして扱う
            logger.debug("セレクタの評価に失敗しました: %s (%s)", candidate.describe(), exc)
            return 0

    async def describe(
        self, candidate: LocatorCandidate, tracked_attributes: Sequence[str],
    ) -> Optional[ElementInfo]:
        locator = self.locator(candidate)
        try:
            data = await locator.first.evaluate(_DESCRIBE_JS)
        except Exception as exc:
            logger.debug("要素情報の取得に失敗しました: %s (%s)", candidate.describe(), exc)
            return None
        return element_info_from_dict(data, tracked_attributes)

    async def snapshot(self) -> DomSnapshot:
        return DomSnapshot(await self._page.content())
