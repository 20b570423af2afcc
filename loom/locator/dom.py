"""
DOM スナップショット — lxml による HTML 解析と要素情報の抽出

記録時にページから受け取った HTML、または再生時に取得したページ内容を
lxml で解析し、XPath による候補評価と ElementInfo の生成を行う。

主な機能:
  - DomSnapshot: HTML の解析、XPath 評価、一致数の算出
  - element_info: 要素から追跡属性のみを持つ ElementInfo を生成
  - structural_selector: タグ・クラス・位置から一意な CSS / XPath を生成
  - xpath_literal: 任意の文字列を XPath の文字列リテラルに変換
  - SnapshotDom: オフラインのスナップショットに対する LiveDom 実装
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Iterator, Optional, Protocol, Sequence

import lxml.html
from lxml import etree

from ..models import ElementInfo, LocatorCandidate

logger = logging.getLogger(__name__)

# 記録時にページ側で対象要素へ付与されるマーカー属性
TARGET_MARKER = "data-loom-target"

# ElementInfo.text の最大長
MAX_TEXT_LENGTH = 100

_CSS_IDENT = re.compile(r"-?[_a-zA-Z][_a-zA-Z0-9-]*")

_INTERACTIVE_TAGS = frozenset({"a", "button", "label", "option", "summary"})
_INTERACTIVE_ROLES = frozenset({"button", "link", "tab", "menuitem", "checkbox", "radio", "option"})
_BUTTON_INPUT_TYPES = frozenset({"submit", "button", "reset"})


# ---------------------------------------------------------------------------
# 文字列ヘルパー
# ---------------------------------------------------------------------------

def xpath_literal(value: str) -> str:
    """文字列を XPath 1.0 の文字列リテラルに変換する。

    シングルクォートとダブルクォートの両方を含む場合は concat() を使用する。

    Args:
        value: 変換する文字列

    Returns:
        XPath の文字列リテラル
    """
    if "'" not in value:
        return f"'{value}'"
    if '"' not in value:
        return f'"{value}"'
    parts = value.split("'")
    return "concat(" + ", \"'\", ".join(f"'{p}'" for p in parts) + ")"


def css_string(value: str) -> str:
    """文字列を CSS の属性値（ダブルクォート）に変換する。"""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\a ")
    return f'"{escaped}"'


def is_css_identifier(value: str) -> bool:
    return bool(_CSS_IDENT.fullmatch(value))


def normalize_text(value: Optional[str]) -> str:
    """空白を正規化した文字列を返す。"""
    return " ".join((value or "").split())


def class_predicate(token: str) -> str:
    """クラストークンに一致する XPath 述語を返す。"""
    return f"contains(concat(' ', normalize-space(@class), ' '), {xpath_literal(' ' + token + ' ')})"


# ---------------------------------------------------------------------------
# スナップショット
# ---------------------------------------------------------------------------

class DomSnapshot:
    """HTML を解析した DOM スナップショット。

    使用例::

        snapshot = DomSnapshot("<html><body><button id='ok'>OK</button></body></html>")
        [button] = snapshot.select("//button")
        snapshot.count("//*[@id='ok']")  # => 1
    """

    def __init__(self, html: str) -> None:
        """HTML を解析してスナップショットを作成する。

        Args:
            html: HTML 文字列（完全な文書でも断片でもよい）
        """
        if not html or not html.strip():
            html = "<html><body></body></html>"
        self._html = html
        self._root = lxml.html.document_fromstring(html)
        self._tree = self._root.getroottree()

    @property
    def html(self) -> str:
        return self._html

    @property
    def root(self) -> lxml.html.HtmlElement:
        return self._root

    # -------------------------------------------------------------------
    # XPath 評価
    # -------------------------------------------------------------------

    def select(self, xpath: str) -> list[lxml.html.HtmlElement]:
        """XPath に一致する要素を返す。

        不正な XPath の場合は空リストを返す。

        Args:
            xpath: 評価する XPath

        Returns:
            一致した要素のリスト（文書順）
        """
        if not xpath:
            return []
        try:
            result = self._root.xpath(xpath)
        except etree.XPathError as exc:
            logger.debug("XPath の評価に失敗しました: %s (%s)", xpath, exc)
            return []
        if not isinstance(result, list):
            return []
        return [node for node in result if isinstance(node, etree._Element) and isinstance(node.tag, str)]

    def count(self, xpath: str) -> int:
        return len(self.select(xpath))

    def elements(self) -> Iterator[lxml.html.HtmlElement]:
        """body 配下の全要素を文書順に返す。"""
        body = self._root.find("body")
        scope = body if body is not None else self._root
        for node in scope.iter():
            if isinstance(node.tag, str):
                yield node

    def absolute_xpath(self, element: lxml.html.HtmlElement) -> str:
        """要素の絶対 XPath を返す。

        同名の兄弟要素が存在する階層にのみ位置インデックスを付与する。
        """
        return self._tree.getpath(element)

    def pop_marked_target(self) -> Optional[lxml.html.HtmlElement]:
        """記録用マーカーが付いた要素を取り出し、マーカーを除去する。"""
        marked = self.select(f"//*[@{TARGET_MARKER}]")
        for node in marked:
            del node.attrib[TARGET_MARKER]
        return marked[0] if marked else None

    # -------------------------------------------------------------------
    # 構造的セレクタ
    # -------------------------------------------------------------------

    def _segment(self, element: lxml.html.HtmlElement) -> tuple[str, str]:
        """要素 1 階層分の CSS と XPath の断片を返す。"""
        tag = element.tag.lower()
        css = tag
        xpath = tag

        parent = element.getparent()
        if parent is not None:
            siblings = [c for c in parent if isinstance(c.tag, str) and c.tag.lower() == tag]
            if len(siblings) > 1:
                position = siblings.index(element) + 1
                css += f":nth-of-type({position})"
                xpath += f"[{position}]"

        tokens = [t for t in (element.get("class") or "").split() if is_css_identifier(t)]
        for token in tokens:
            css += f".{token}"
            xpath += f"[{class_predicate(token)}]"
        return css, xpath

    def structural_selector(
        self,
        element: lxml.html.HtmlElement,
        max_depth: int = 4,
    ) -> tuple[str, str, int]:
        """タグ・クラス・位置から構造的なセレクタを生成する。

        要素自身から祖先方向に階層を追加し、一意になった時点で止める。
        max_depth 階層まで辿っても一意にならない場合は最後の結果を返す。

        Args:
            element: 対象要素
            max_depth: 追加する祖先の最大数

        Returns:
            (CSS セレクタ, 等価な XPath, 追加した祖先の数)
        """
        css_parts: list[str] = []
        xpath_parts: list[str] = []
        node: Optional[lxml.html.HtmlElement] = element
        depth = 0
        css = xpath = ""
        while node is not None and isinstance(node.tag, str):
            css_seg, xpath_seg = self._segment(node)
            css_parts.insert(0, css_seg)
            xpath_parts.insert(0, xpath_seg)
            css = " > ".join(css_parts)
            xpath = "//" + "/".join(xpath_parts)
            if self.count(xpath) == 1 or depth >= max_depth:
                break
            node = node.getparent()
            if node is None or node.tag == "html":
                break
            depth += 1
        return css, xpath, depth

    # -------------------------------------------------------------------
    # 要素情報
    # -------------------------------------------------------------------

    def element_info(
        self,
        element: lxml.html.HtmlElement,
        tracked_attributes: Iterable[str],
        include_css: bool = True,
    ) -> ElementInfo:
        """要素から ElementInfo を生成する。

        Args:
            element: 対象要素
            tracked_attributes: attributes に含める属性名
            include_css: 構造的 CSS を算出するか（全要素を走査する場合は False）

        Returns:
            追跡属性のみを持つ ElementInfo
        """
        tracked = set(tracked_attributes)
        attributes = {
            key: value
            for key, value in element.attrib.items()
            if key in tracked and key not in ("id", "name", "class") and value.strip()
        }
        text = normalize_text(element.text_content())[:MAX_TEXT_LENGTH] or None
        css = self.structural_selector(element)[0] if include_css else ""
        return ElementInfo(
            tag_name=element.tag,
            id=element.get("id") or None,
            name=element.get("name") or None,
            class_name=normalize_text(element.get("class")) or None,
            text=text,
            xpath=self.absolute_xpath(element),
            css=css,
            attributes=attributes,
        )


def is_interactive(element: lxml.html.HtmlElement) -> bool:
    """テキストロケーターの対象となる操作可能要素かを判定する。"""
    tag = element.tag.lower()
    if tag in _INTERACTIVE_TAGS:
        return True
    if (element.get("role") or "").lower() in _INTERACTIVE_ROLES:
        return True
    return tag == "input" and (element.get("type") or "").lower() in _BUTTON_INPUT_TYPES


# ---------------------------------------------------------------------------
# LiveDom プロトコル
# ---------------------------------------------------------------------------

class LiveDom(Protocol):
    """リゾルバーが要素を評価する DOM の抽象。"""

    async def count(self, candidate: LocatorCandidate) -> int:
        """候補に一致するノード数を返す。"""
        ...

    async def describe(
        self, candidate: LocatorCandidate, tracked_attributes: Sequence[str],
    ) -> Optional[ElementInfo]:
        """候補に一致する最初のノードの ElementInfo を返す。"""
        ...

    async def snapshot(self) -> DomSnapshot:
        """現在の DOM のスナップショットを返す。"""
        ...


class SnapshotDom:
    """オフラインの DomSnapshot に対する LiveDom 実装。

    候補は等価 XPath で評価する。
    """

    def __init__(self, snapshot: DomSnapshot | str) -> None:
        if isinstance(snapshot, str):
            snapshot = DomSnapshot(snapshot)
        self._snapshot = snapshot

    async def count(self, candidate: LocatorCandidate) -> int:
        return self._snapshot.count(candidate.xpath)

    async def describe(
        self, candidate: LocatorCandidate, tracked_attributes: Sequence[str],
    ) -> Optional[ElementInfo]:
        nodes = self._snapshot.select(candidate.xpath)
        if not nodes:
            return None
        return self._snapshot.element_info(nodes[0], tracked_attributes)

    async def snapshot(self) -> DomSnapshot:
        return self._snapshot
