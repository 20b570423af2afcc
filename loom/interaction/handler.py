"""
Interaction Handler — 自己修復リゾルバーを使った要素操作

記録済みイベントまたはページオブジェクトのロケーター記述子を対象に、
待機 → 解決 → 操作 → 検証 の順で操作を実行する。

主な機能:
  - click / type_text / select_option / assert_visible / assert_text
  - Playwright の一時的なエラーに対する再試行（element.interaction.retry.*）
  - ネイティブ操作失敗時の JavaScript フォールバック
  - 操作全体のタイムアウト: 試行回数 × (再試行間隔 + 要素の待機 + 操作タイムアウト)
  - 解決失敗（LocatorNotFoundError）は再試行せず、診断情報を保存して送出
  - replay: 記録イベントの種別に応じた操作の再生
  - ダブルクリック・右クリック（記録時の click の値 "double" / "right"）

記録済みのセッションは読み取るだけで変更しない。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Sequence, Union

from playwright.async_api import Error as PlaywrightError

from ..config import InteractionConfig
from ..errors import InteractionError, LocatorNotFoundError
from ..locator.dom import normalize_text
from ..locator.page_dom import PlaywrightDom
from ..locator.resolver import Resolution, SelfHealingResolver
from ..models import ElementInfo, EventType, LocatorCandidate, RecordedEvent
from .diagnostics import DiagnosticsWriter
from .page import LocatorDescriptor

if TYPE_CHECKING:
    from playwright.async_api import Locator, Page

logger = logging.getLogger(__name__)

Target = Union[RecordedEvent, LocatorDescriptor]
_Action = Callable[["Locator"], Awaitable[None]]
_Check = Callable[["Locator"], Awaitable[bool]]

_JS_CLICK = "el => el.click()"
_JS_MOUSE_EVENT = """(el, type) => {
  el.dispatchEvent(new MouseEvent(type, {bubbles: true, cancelable: true, view: window}));
}"""
_JS_SET_VALUE = """(el, value) => {
  el.focus();
  el.value = value;
  el.dispatchEvent(new Event('input', {bubbles: true}));
  el.dispatchEvent(new Event('change', {bubbles: true}));
}"""


# 記録時の click の値 → クリック方法
CLICK_VARIANTS: dict[str, dict] = {
    "double": {"click_count": 2},
    "right": {"button": "right"},
}

@dataclass
class _ResolvedTarget:
    label: str
    recorded: ElementInfo
    primary: Optional[LocatorCandidate]
    alternates: Sequence[LocatorCandidate]


def _unpack(target: Target) -> _ResolvedTarget:
    if isinstance(target, LocatorDescriptor):
        return _ResolvedTarget(target.name, target.expected, target.primary, target.alternates)
    if target.target is None:
        raise LocatorNotFoundError(
            f"event#{target.sequence_number}", reason="操作対象がありません",
        )
    label = f"event#{target.sequence_number}-{target.type.value}"
    return _ResolvedTarget(label, target.target, target.locator, target.alternates)


class InteractionHandler:
    """自己修復リゾルバーを使って要素を操作する。

    使用例::

        handler = InteractionHandler(page, SelfHealingResolver(config.healing), config.interaction)
        for event in manager.get_events(session_id):
            await handler.replay(event)
    """

    def __init__(
        self,
        page: Page,
        resolver: Optional[SelfHealingResolver] = None,
        config: Optional[InteractionConfig] = None,
        diagnostics: Optional[DiagnosticsWriter] = None,
    ) -> None:
        """InteractionHandler を初期化する。

        Args:
            page: Playwright の Page オブジェクト
            resolver: 要素の解決に使用するリゾルバー
            config: 要素操作の設定
            diagnostics: 解決失敗時の診断情報の保存先（None で保存しない）
        """
        self._page = page
        self._dom = PlaywrightDom(page)
        self._resolver = resolver or SelfHealingResolver()
        self._config = config or InteractionConfig()
        self._diagnostics = diagnostics

    @property
    def total_timeout(self) -> float:
        """操作全体のタイムアウト（秒）。

        1 回の試行は要素の待機と操作のそれぞれに action_timeout_ms を使う。
        """
        c = self._config
        return c.retry_count * (c.retry_delay_ms + 2 * c.action_timeout_ms) / 1000

    # -------------------------------------------------------------------
    # パブリック API
    # -------------------------------------------------------------------

    async def click(self, target: Target, button: str = "left", click_count: int = 1) -> Resolution:
        """要素をクリックする。

        Args:
            target: 対象
            button: "left" / "right" / "middle"
            click_count: 2 でダブルクリック
        """
        timeout = self._config.action_timeout_ms
        options: dict = {}
        if button != "left":
            options["button"] = button
        if click_count != 1:
            options["click_count"] = click_count

        async def native(locator: Locator) -> None:
            await locator.click(timeout=timeout, **options)

        async def fallback(locator: Locator) -> None:
            if button == "right":
                await locator.evaluate(_JS_MOUSE_EVENT, "contextmenu")
            elif click_count == 2:
                await locator.evaluate(_JS_MOUSE_EVENT, "dblclick")
            else:
                await locator.evaluate(_JS_CLICK)

        return await self._perform("click", target, native, fallback)

    async def type_text(self, target: Target, text: str) -> Resolution:
        """要素に文字列を入力し、入力値を検証する。"""
        timeout = self._config.action_timeout_ms

        async def native(locator: Locator) -> None:
            await locator.fill(text, timeout=timeout)

        async def fallback(locator: Locator) -> None:
            await locator.evaluate(_JS_SET_VALUE, text)

        async def verify(locator: Locator) -> bool:
            return await locator.input_value(timeout=timeout) == text

        return await self._perform("type", target, native, fallback, verify)

    async def select_option(self, target: Target, value: str) -> Resolution:
        """select 要素の値を選択し、選択値を検証する。"""
        timeout = self._config.action_timeout_ms

        async def native(locator: Locator) -> None:
            await locator.select_option(value, timeout=timeout)

        async def fallback(locator: Locator) -> None:
            await locator.evaluate(_JS_SET_VALUE, value)

        async def verify(locator: Locator) -> bool:
            return await locator.input_value(timeout=timeout) == value

        return await self._perform("select", target, native, fallback, verify)

    async def assert_visible(self, target: Target) -> Resolution:
        """要素が表示されていることを検証する。"""

        async def verify(locator: Locator) -> bool:
            return await locator.is_visible()

        return await self._perform("assert_visible", target, None, None, verify)

    async def assert_text(self, target: Target, expected: str, exact: bool = False) -> Resolution:
        """要素のテキストを検証する。

        Args:
            target: 対象
            expected: 期待するテキスト
            exact: True の場合は完全一致、False の場合は部分一致（空白は正規化）
        """
        expected_text = normalize_text(expected)

        async def verify(locator: Locator) -> bool:
            actual = normalize_text(await locator.text_content(timeout=self._config.action_timeout_ms))
            return actual == expected_text if exact else expected_text in actual

        return await self._perform("assert_text", target, None, None, verify)

    async def replay(self, event: RecordedEvent) -> Optional[Resolution]:
        """記録イベントを種別に応じて再生する。

        Returns:
            要素を操作した場合は解決結果、それ以外は None
        """
        if event.type == EventType.CLICK:
            return await self.click(event, **CLICK_VARIANTS.get(event.value or "", {}))
        if event.type == EventType.TYPE:
            return await self.type_text(event, event.value or "")
        if event.type == EventType.SELECT:
            return await self.select_option(event, event.value or "")
        if event.type == EventType.ASSERTION:
            if event.value:
                return await self.assert_text(event, event.value)
            return await self.assert_visible(event)
        if event.type == EventType.NAVIGATE:
            url = event.value or event.url
            if url:
                await self._page.goto(url)
            return None
        if event.type == EventType.WAIT:
            await asyncio.sleep(float(event.value or 0) / 1000)
            return None
        logger.info("再生対象外のイベントをスキップします: seq=%d %s", event.sequence_number, event.type.value)
        return None

    # -------------------------------------------------------------------
    # 共通処理
    # -------------------------------------------------------------------

    async def _perform(
        self,
        operation: str,
        target: Target,
        native: Optional[_Action],
        fallback: Optional[_Action],
        verify: Optional[_Check] = None,
    ) -> Resolution:
        resolved = _unpack(target)
        timeout = self.total_timeout
        try:
            return await asyncio.wait_for(
                self._attempts(operation, resolved, native, fallback, verify), timeout,
            )
        except asyncio.TimeoutError as exc:
            await self._save_diagnostics(resolved.label)
            raise InteractionError(
                f"{operation} がタイムアウトしました（{timeout:.1f} 秒）: {resolved.label}"
            ) from exc

    async def _attempts(
        self,
        operation: str,
        resolved: _ResolvedTarget,
        native: Optional[_Action],
        fallback: Optional[_Action],
        verify: Optional[_Check],
    ) -> Resolution:
        retry_count = self._config.retry_count
        last_error: Optional[BaseException] = None

        for attempt in range(1, retry_count + 1):
            if attempt > 1:
                await asyncio.sleep(self._config.retry_delay_ms / 1000)

            await self._wait_attached(resolved)
            try:
                resolution = await self._resolver.resolve(
                    self._dom, resolved.recorded, resolved.primary, resolved.alternates,
                )
            except LocatorNotFoundError:
                await self._save_diagnostics(resolved.label)
                raise

            locator = self._dom.locator(resolution.candidate)
            try:
                if native is not None:
                    await self._act(operation, locator, native, fallback)
                if verify is not None and not await verify(locator):
                    raise InteractionError(f"{operation} の検証に失敗しました: {resolved.label}")
            except (PlaywrightError, InteractionError) as exc:
                last_error = exc
                logger.warning(
                    "%s に失敗しました（%d/%d）: %s (%s)",
                    operation, attempt, retry_count, resolved.label, exc,
                )
                continue

            logger.debug(
                "%s 完了: %s via %s (score=%.3f, healed=%s)",
                operation, resolved.label, resolution.candidate.describe(),
                resolution.score, resolution.healed,
            )
            return resolution

        raise InteractionError(
            f"{operation} に失敗しました（{retry_count} 回試行）: {resolved.label}: {last_error}"
        ) from last_error

    async def _act(
        self,
        operation: str,
        locator: Locator,
        native: _Action,
        fallback: Optional[_Action],
    ) -> None:
        try:
            await native(locator)
        except PlaywrightError as exc:
            if fallback is None or not self._config.js_fallback:
                raise
            logger.info("%s をネイティブ操作で実行できないため JavaScript で実行します: %s", operation, exc)
            await fallback(locator)

    async def _wait_attached(self, resolved: _ResolvedTarget) -> None:
        """一次ロケーター・修復履歴・代替ロケーターのいずれかの要素が DOM に追加されるまで待機する。

        一次ロケーターが失われていても修復先が既にあれば待機はすぐに終わる。
        タイムアウトした場合は待機を打ち切り、リゾルバーに委ねる。
        """
        candidates = [resolved.primary] if resolved.primary is not None else []
        candidates += self._resolver.history.healed_candidates(resolved.recorded.key)
        candidates += list(resolved.alternates)
        if not candidates:
            return
        locator = self._dom.locator(candidates[0])
        for candidate in candidates[1:]:
            locator = locator.or_(self._dom.locator(candidate))
        try:
            await locator.first.wait_for(state="attached", timeout=self._config.action_timeout_ms)
        except PlaywrightError as exc:
            logger.debug("要素の待機を打ち切りました: %s (%s)", resolved.label, exc)

    async def _save_diagnostics(self, label: str) -> None:
        if self._diagnostics is not None:
            await self._diagnostics.save(self._page, label)
