"""
ページオブジェクト — ロケーター記述子のビルダーと基底クラス

LocatorBuilder で一次ロケーター・代替ロケーター・期待する要素情報を組み立て、
BasePage の生成時に明示的に渡す。記述子は InteractionHandler の操作対象になる。

使用例::

    class LoginPage(BasePage):
        def __init__(self, handler):
            super().__init__(handler, {
                "submit": LocatorBuilder("submit", tag="button")
                    .id("login-submit")
                    .text("ログイン")
                    .build(),
            })

    await LoginPage(handler).click("submit")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Optional

from ..locator.dom import class_predicate, xpath_literal
from ..models import ElementInfo, LocatorCandidate, LocatorStrategy

if TYPE_CHECKING:
    from ..locator.resolver import Resolution
    from .handler import InteractionHandler


@dataclass(frozen=True)
class LocatorDescriptor:
    """名前付きのロケーター記述子。

    Attributes:
        name: 記述子の名前
        primary: 一次ロケーター
        alternates: 代替ロケーター（優先順）
        expected: 類似度計算に使用する期待要素情報
    """

    name: str
    primary: LocatorCandidate
    alternates: tuple[LocatorCandidate, ...]
    expected: ElementInfo


class LocatorBuilder:
    """LocatorDescriptor を組み立てるビルダー。

    最初に追加した候補が一次ロケーターになり、以降は代替ロケーターになる。
    """

    def __init__(self, name: str, tag: str = "*") -> None:
        self._name = name
        self._tag = tag.lower()
        self._candidates: list[LocatorCandidate] = []
        self._expected: dict[str, Any] = {}

    def _add(self, strategy: LocatorStrategy, value: str, xpath: str) -> "LocatorBuilder":
        confidence = max(0.1, 1.0 - 0.1 * len(self._candidates))
        self._candidates.append(LocatorCandidate(
            strategy=strategy, value=value, confidence=round(confidence, 2), unique=True, xpath=xpath,
        ))
        return self

    # -------------------------------------------------------------------
    # 候補
    # -------------------------------------------------------------------

    def id(self, value: str) -> "LocatorBuilder":
        self._expected.setdefault("id", value)
        return self._add(LocatorStrategy.ID, value, f"//*[@id={xpath_literal(value)}]")

    def name(self, value: str) -> "LocatorBuilder":
        self._expected.setdefault("name", value)
        return self._add(LocatorStrategy.NAME, value, f"//*[@name={xpath_literal(value)}]")

    def class_name(self, token: str) -> "LocatorBuilder":
        self._expected.setdefault("class_name", token)
        return self._add(LocatorStrategy.CLASS_NAME, token, f"//*[{class_predicate(token)}]")

    def text(self, value: str) -> "LocatorBuilder":
        self._expected.setdefault("text", value)
        return self._add(
            LocatorStrategy.TEXT, value, f"//{self._tag}[normalize-space(.)={xpath_literal(value)}]",
        )

    def link_text(self, value: str) -> "LocatorBuilder":
        self._expected.setdefault("text", value)
        return self._add(LocatorStrategy.LINK_TEXT, value, f"//a[normalize-space(.)={xpath_literal(value)}]")

    def xpath(self, expression: str) -> "LocatorBuilder":
        return self._add(LocatorStrategy.XPATH, expression, expression)

    def css(self, selector: str, xpath: str = "") -> "LocatorBuilder":
        """CSS セレクタを追加する。

        Args:
            selector: CSS セレクタ
            xpath: オフライン評価用の等価 XPath（省略時はライブページでのみ評価可能）
        """
        return self._add(LocatorStrategy.CSS, selector, xpath)

    def attribute(self, name: str, value: str) -> "LocatorBuilder":
        """属性による CSS 候補を追加し、期待する属性として記録する。"""
        self._expected.setdefault("attributes", {})[name] = value
        tag = self._tag if self._tag != "*" else ""
        css_tag = tag or "*"
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return self._add(
            LocatorStrategy.CSS,
            f'{tag}[{name}="{escaped}"]',
            f"//{css_tag}[@{name}={xpath_literal(value)}]",
        )

    # -------------------------------------------------------------------
    # 期待要素情報
    # -------------------------------------------------------------------

    def expect(self, **fields: Any) -> "LocatorBuilder":
        """期待する要素情報（ElementInfo のフィールド）を上書きする。"""
        self._expected.update(fields)
        return self

    def build(self) -> LocatorDescriptor:
        """LocatorDescriptor を生成する。

        Raises:
            ValueError: 候補が 1 つもない場合
        """
        if not self._candidates:
            raise ValueError(f"ロケーター候補がありません: {self._name}")
        fields = {"tag_name": self._tag, **self._expected}
        return LocatorDescriptor(
            name=self._name,
            primary=self._candidates[0],
            alternates=tuple(self._candidates[1:]),
            expected=ElementInfo(**fields),
        )


class BasePage:
    """ページオブジェクトの基底クラス。

    記述子は生成時に明示的に渡す。
    """

    def __init__(
        self,
        handler: InteractionHandler,
        locators: Optional[Mapping[str, LocatorDescriptor]] = None,
    ) -> None:
        self._handler = handler
        self._locators: dict[str, LocatorDescriptor] = dict(locators or {})

    @property
    def handler(self) -> InteractionHandler:
        return self._handler

    def locator(self, name: str) -> LocatorDescriptor:
        try:
            return self._locators[name]
        except KeyError:
            raise KeyError(f"{type(self).__name__} にロケーター '{name}' は定義されていません") from None

    async def click(self, name: str) -> Resolution:
        return await self._handler.click(self.locator(name))

    async def type_text(self, name: str, text: str) -> Resolution:
        return await self._handler.type_text(self.locator(name), text)

    async def select_option(self, name: str, value: str) -> Resolution:
        return await self._handler.select_option(self.locator(name), value)

    async def assert_visible(self, name: str) -> Resolution:
        return await self._handler.assert_visible(self.locator(name))

    async def assert_text(self, name: str, expected: str, exact: bool = False) -> Resolution:
        return await self._handler.assert_text(self.locator(name), expected, exact)
