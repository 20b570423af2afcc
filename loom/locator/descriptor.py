"""
Element Descriptor Generator — 操作対象要素のロケーター候補生成

DOM スナップショットと対象要素から、信頼度付きのロケーター候補を生成する。
DOM 以外の状態に依存しない純粋な処理であり、各候補はスナップショット上で
再評価して一意性を判定する。

候補の優先順位（信頼度の高い順）:
  1. id — 存在し一意な場合のみ 1.0
  2. 安定属性 — data-testid 0.95, name 0.9, aria-label 0.85, placeholder 0.8,
     title 0.75, href 0.7, type 0.5, value 0.45（一意でない場合は半減）
  3. クラス名 0.6（一意な場合のみ）、構造的 CSS 0.7 - 0.1 × 祖先数（下限 0.3）
  4. XPath — 属性による相対 XPath 0.35、絶対 XPath 0.2
  5. テキスト — 操作可能要素の表示テキスト 0.65（a 要素は linkText）

主な機能:
  - DescriptorGenerator.generate: 候補の生成と一次ロケーターの選定
  - DescriptorGenerator.candidates_for: 一次ロケーターを選ばずに候補だけを生成
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

import lxml.html

from ..config import DEFAULT_TRACKED_ATTRIBUTES
from ..models import ElementInfo, LocatorCandidate, LocatorStrategy
from .dom import (
    DomSnapshot,
    class_predicate,
    css_string,
    is_css_identifier,
    is_interactive,
    normalize_text,
    xpath_literal,
)

logger = logging.getLogger(__name__)

# 安定属性ごとの基準信頼度
STABLE_ATTRIBUTE_CONFIDENCE: dict[str, float] = {
    "data-testid": 0.95,
    "name": 0.9,
    "aria-label": 0.85,
    "placeholder": 0.8,
    "title": 0.75,
    "href": 0.7,
    "type": 0.5,
    "value": 0.45,
}

ID_CONFIDENCE = 1.0
CLASS_NAME_CONFIDENCE = 0.6
STRUCTURAL_CSS_BASE = 0.7
STRUCTURAL_CSS_FLOOR = 0.3
TEXT_CONFIDENCE = 0.65
RELATIVE_XPATH_CONFIDENCE = 0.35
ABSOLUTE_XPATH_CONFIDENCE = 0.2
TAG_NAME_CONFIDENCE = 0.3

# テキストロケーターに使用する表示テキストの最大長
MAX_LOCATOR_TEXT = 80


@dataclass
class ElementDescriptor:
    """生成結果。

    Attributes:
        element: 対象要素の ElementInfo
        primary: 一次ロケーター（候補がない場合は None）
        alternates: 代替ロケーター（信頼度の降順、上限付き）
        ambiguous: 一意な候補が存在しないか
    """

    element: ElementInfo
    primary: Optional[LocatorCandidate]
    alternates: list[LocatorCandidate] = field(default_factory=list)
    ambiguous: bool = False


class DescriptorGenerator:
    """DOM スナップショットからロケーター候補を生成する。"""

    def __init__(
        self,
        tracked_attributes: Sequence[str] = DEFAULT_TRACKED_ATTRIBUTES,
        max_alternates: int = 5,
    ) -> None:
        """DescriptorGenerator を初期化する。

        Args:
            tracked_attributes: ElementInfo と属性候補の対象とする属性名
            max_alternates: 代替ロケーターの上限
        """
        self._tracked = tuple(tracked_attributes)
        self._max_alternates = max_alternates

    @property
    def tracked_attributes(self) -> tuple[str, ...]:
        return self._tracked

    # -------------------------------------------------------------------
    # パブリック API
    # -------------------------------------------------------------------

    def generate(self, snapshot: DomSnapshot, element: lxml.html.HtmlElement) -> ElementDescriptor:
        """対象要素の ElementInfo とロケーター候補を生成する。

        一意な候補のうち信頼度が最も高いものを一次ロケーターとする。
        一意な候補がない場合は信頼度が最も高い候補を一次とし、ambiguous を立てる。

        Args:
            snapshot: 対象要素を含む DOM スナップショット
            element: 対象要素

        Returns:
            生成結果
        """
        info = snapshot.element_info(element, self._tracked)
        candidates = self.candidates_for(snapshot, element)

        unique = [c for c in candidates if c.unique]
        if unique:
            primary = unique[0]
            ambiguous = False
        elif candidates:
            primary = candidates[0]
            ambiguous = True
            logger.warning("一意なロケーターを生成できませんでした: %s", info.xpath)
        else:
            primary = None
            ambiguous = True
            logger.warning("ロケーター候補がありません: %s", info.xpath)

        alternates = [c for c in candidates if c is not primary][: self._max_alternates]
        logger.debug(
            "ロケーター生成: %s primary=%s alternates=%d",
            info.xpath, primary.describe() if primary else None, len(alternates),
        )
        return ElementDescriptor(
            element=info,
            primary=primary,
            alternates=alternates,
            ambiguous=ambiguous,
        )

    def candidates_for(
        self, snapshot: DomSnapshot, element: lxml.html.HtmlElement,
    ) -> list[LocatorCandidate]:
        """対象要素の候補を信頼度の降順で返す。

        同じ XPath を持つ候補は信頼度の高い方のみを残す。
        """
        raw: list[LocatorCandidate] = []
        raw.extend(self._id_candidates(snapshot, element))
        raw.extend(self._attribute_candidates(snapshot, element))
        raw.extend(self._class_candidates(snapshot, element))
        raw.extend(self._text_candidates(snapshot, element))
        raw.extend(self._xpath_candidates(snapshot, element))
        raw.extend(self._tag_candidates(snapshot, element))

        # 安定ソートのため、同じ信頼度では生成順（戦略の優先順）を維持する
        ordered = sorted(raw, key=lambda c: c.confidence, reverse=True)
        seen: set[str] = set()
        result: list[LocatorCandidate] = []
        for candidate in ordered:
            if candidate.xpath in seen:
                continue
            seen.add(candidate.xpath)
            result.append(candidate)
        return result

    # -------------------------------------------------------------------
    # 戦略ごとの候補生成
    # -------------------------------------------------------------------

    @staticmethod
    def _candidate(
        snapshot: DomSnapshot,
        strategy: LocatorStrategy,
        value: str,
        xpath: str,
        confidence: float,
        demote_if_shared: bool = True,
    ) -> LocatorCandidate:
        unique = snapshot.count(xpath) == 1
        if not unique and demote_if_shared:
            confidence *= 0.5
        return LocatorCandidate(
            strategy=strategy,
            value=value,
            confidence=round(confidence, 4),
            unique=unique,
            xpath=xpath,
        )

    def _id_candidates(self, snapshot: DomSnapshot, element) -> list[LocatorCandidate]:
        element_id = (element.get("id") or "").strip()
        if not element_id:
            return []
        xpath = f"//*[@id={xpath_literal(element_id)}]"
        if snapshot.count(xpath) != 1:
            logger.debug("id が一意ではないため除外します: %s", element_id)
            return []
        return [LocatorCandidate(
            strategy=LocatorStrategy.ID,
            value=element_id,
            confidence=ID_CONFIDENCE,
            unique=True,
            xpath=xpath,
        )]

    def _attribute_candidates(self, snapshot: DomSnapshot, element) -> list[LocatorCandidate]:
        tag = element.tag.lower()
        candidates = []
        for attr, base in STABLE_ATTRIBUTE_CONFIDENCE.items():
            if attr not in self._tracked:
                continue
            value = element.get(attr)
            if value is None or not value.strip():
                continue
            if attr == "name":
                xpath = f"//*[@name={xpath_literal(value)}]"
                candidates.append(self._candidate(
                    snapshot, LocatorStrategy.NAME, value, xpath, base,
                ))
            else:
                css = f"{tag}[{attr}={css_string(value)}]"
                xpath = f"//{tag}[@{attr}={xpath_literal(value)}]"
                candidates.append(self._candidate(
                    snapshot, LocatorStrategy.CSS, css, xpath, base,
                ))
        return candidates

    def _class_candidates(self, snapshot: DomSnapshot, element) -> list[LocatorCandidate]:
        candidates = []
        tokens = [t for t in (element.get("class") or "").split() if is_css_identifier(t)]
        for token in tokens:
            xpath = f"//*[{class_predicate(token)}]"
            if snapshot.count(xpath) == 1:
                candidates.append(LocatorCandidate(
                    strategy=LocatorStrategy.CLASS_NAME,
                    value=token,
                    confidence=CLASS_NAME_CONFIDENCE,
                    unique=True,
                    xpath=xpath,
                ))

        css, xpath, depth = snapshot.structural_selector(element)
        confidence = max(STRUCTURAL_CSS_FLOOR, STRUCTURAL_CSS_BASE - 0.1 * depth)
        candidates.append(self._candidate(
            snapshot, LocatorStrategy.CSS, css, xpath, confidence,
        ))
        return candidates

    def _text_candidates(self, snapshot: DomSnapshot, element) -> list[LocatorCandidate]:
        if not is_interactive(element):
            return []
        text = normalize_text(element.text_content())
        if not text or len(text) > MAX_LOCATOR_TEXT:
            return []
        tag = element.tag.lower()
        if tag == "a":
            strategy = LocatorStrategy.LINK_TEXT
            xpath = f"//a[normalize-space(.)={xpath_literal(text)}]"
        else:
            strategy = LocatorStrategy.TEXT
            xpath = f"//{tag}[normalize-space(.)={xpath_literal(text)}]"
        return [self._candidate(snapshot, strategy, text, xpath, TEXT_CONFIDENCE)]

    def _xpath_candidates(self, snapshot: DomSnapshot, element) -> list[LocatorCandidate]:
        candidates = []
        tag = element.tag.lower()
        predicates = []
        for attr in self._tracked:
            if attr in ("id", "class"):
                continue
            value = element.get(attr)
            if value is not None and value.strip():
                predicates.append(f"@{attr}={xpath_literal(value)}")
        if predicates:
            relative = f"//{tag}[{' and '.join(predicates)}]"
            candidates.append(self._candidate(
                snapshot, LocatorStrategy.XPATH, relative, relative, RELATIVE_XPATH_CONFIDENCE,
            ))

        absolute = snapshot.absolute_xpath(element)
        candidates.append(self._candidate(
            snapshot, LocatorStrategy.XPATH, absolute, absolute, ABSOLUTE_XPATH_CONFIDENCE,
            demote_if_shared=False,
        ))
        return candidates

    def _tag_candidates(self, snapshot: DomSnapshot, element) -> list[LocatorCandidate]:
        tag = element.tag.lower()
        xpath = f"//{tag}"
        if snapshot.count(xpath) != 1:
            return []
        return [LocatorCandidate(
            strategy=LocatorStrategy.TAG_NAME,
            value=tag,
            confidence=TAG_NAME_CONFIDENCE,
            unique=True,
            xpath=xpath,
        )]
