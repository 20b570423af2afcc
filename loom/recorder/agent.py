"""
Browser Instrumentation Agent — ページへの記録スクリプト注入とイベント送信

Playwright のページに記録用 JavaScript を注入し、ページ側で捕捉した操作を
expose_function 経由で受け取る。受け取った DOM スナップショットから
DescriptorGenerator でロケーター候補を生成し、ChannelClient で送信する。

主な機能:
  - document.readyState を確認してから注入（指数バックオフで再試行）
  - 注入の試行上限到達で InjectionError、セッションを Error へ遷移
  - ページ遷移（load）ごとの再注入と navigate イベントの記録
  - SPA の画面遷移（pushState / popstate）も navigate として記録（同一 URL は 1 回）
  - 設定に応じてイベントごとのスクリーンショットを保存
  - チャネル URL の省略時はチャネル設定から導出（TLS 設定時は wss）
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from ..config import LoomConfig
from ..errors import ChannelConnectionError, InjectionError
from ..locator.descriptor import DescriptorGenerator, ElementDescriptor
from ..locator.dom import DomSnapshot
from ..models import EventType, RecordedEvent
from ..channel.client import ChannelClient, Connector
from ..channel.protocol import derive_channel_url

if TYPE_CHECKING:
    from playwright.async_api import Page

    from .session_manager import SessionManager

logger = logging.getLogger(__name__)

# 注入スクリプトのパス
_INJECTED_JS_PATH = Path(__file__).parent / "injected.js"

# ページ側から呼び出す Python 関数名
CAPTURE_BINDING = "__loom_capture"

_READY_STATES = ("interactive", "complete")


class InstrumentationAgent:
    """ページに記録スクリプトを注入し、操作をチャネルへ送信する。

    使用例::

        agent = InstrumentationAgent(session_id, config, manager=manager)
        await agent.attach(page, channel_url=endpoint.url_for(session_id))
        ...
        await agent.detach()
    """

    def __init__(
        self,
        session_id: str,
        config: Optional[LoomConfig] = None,
        manager: Optional[SessionManager] = None,
        generator: Optional[DescriptorGenerator] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        """InstrumentationAgent を初期化する。

        Args:
            session_id: 記録先のセッション ID
            config: loom の設定
            manager: 失敗時に Error へ遷移させる SessionManager
            generator: ロケーター候補の生成器
            connector: チャネル接続の生成関数（テスト用）
        """
        self._session_id = session_id
        self._config = config or LoomConfig()
        self._manager = manager
        self._generator = generator or DescriptorGenerator(
            self._config.healing.tracked_attributes,
            self._config.healing.max_alternates,
        )
        self._connector = connector
        self._script = _INJECTED_JS_PATH.read_text(encoding="utf-8")
        self._client: Optional[ChannelClient] = None
        self._page: Optional[Page] = None
        self._last_url = ""
        self._tasks: set[asyncio.Task] = set()

    @property
    def client(self) -> Optional[ChannelClient]:
        return self._client

    # -------------------------------------------------------------------
    # ライフサイクル
    # -------------------------------------------------------------------

    async def attach(self, page: Page, channel_url: Optional[str] = None) -> None:
        """ページに接続して記録を開始する。

        Args:
            page: Playwright の Page オブジェクト
            channel_url: チャネル URL（省略時はチャネル設定から導出）

        Raises:
            InjectionError: 注入が試行上限内に成功しなかった場合
            ChannelConnectionError: チャネルに接続できなかった場合
        """
        self._page = page
        self._last_url = page.url
        channel = self._config.channel
        url = channel_url or derive_channel_url(
            channel.host, channel.port, self._session_id, channel.path_prefix, channel.secure,
        )

        await page.expose_function(CAPTURE_BINDING, self._on_capture)
        page.on("load", self._on_load)

        try:
            await self.inject(page)
        except InjectionError as exc:
            self._fail(str(exc))
            raise

        user_agent = ""
        try:
            user_agent = await page.evaluate("navigator.userAgent")
        except Exception as exc:
            logger.debug("ユーザーエージェントの取得をスキップ: %s", exc)

        self._client = ChannelClient(
            url,
            self._session_id,
            channel,
            connector=self._connector,
            browser_type=self._browser_type(page),
            user_agent=user_agent,
            page_url=page.url,
            on_failure=lambda exc: self._fail(str(exc)),
        )
        try:
            await self._client.connect()
        except ChannelConnectionError as exc:
            self._fail(str(exc))
            raise
        logger.info("記録エージェントを接続しました: %s (%s)", self._session_id, url)

    async def detach(self) -> None:
        """記録を終了する。ACK 待ちのイベントを送り切ってからチャネルを閉じる。"""
        if self._page is not None:
            try:
                self._page.remove_listener("load", self._on_load)
            except Exception as exc:
                logger.debug("load リスナーの解除をスキップ: %s", exc)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._client is not None:
            await self._client.flush(timeout=self._config.channel.ack_timeout_ms / 1000)
            await self._client.close()

    # -------------------------------------------------------------------
    # 注入
    # -------------------------------------------------------------------

    async def inject(self, page: Page) -> None:
        """記録スクリプトを注入する。

        document.readyState が interactive / complete になっていることを確認してから
        注入し、失敗した場合は指数バックオフで再試行する。

        Raises:
            InjectionError: 試行上限に達した場合
        """
        injection = self._config.injection
        last_error: Optional[BaseException] = None
        for attempt in range(1, injection.max_attempts + 1):
            try:
                state = await page.evaluate("document.readyState")
                if state not in _READY_STATES:
                    raise InjectionError(f"ドキュメントの準備ができていません: {state}")
                await page.evaluate(self._script)
                logger.debug("記録スクリプトを注入しました: %s", page.url)
                return
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "記録スクリプトの注入に失敗しました（%d/%d）: %s",
                    attempt, injection.max_attempts, exc,
                )
            if attempt < injection.max_attempts:
                delay = min(
                    injection.base_delay_ms * (2 ** (attempt - 1)), injection.max_delay_ms,
                ) / 1000
                await asyncio.sleep(delay)

        raise InjectionError(
            f"記録スクリプトの注入が上限 {injection.max_attempts} 回に達しました: {last_error}"
        ) from last_error

    def _on_load(self, *_args: Any) -> None:
        """ページ遷移時に再注入し、URL が変わっていれば navigate を記録する。"""
        page = self._page
        if page is None:
            return
        task = asyncio.ensure_future(self._after_load(page))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _after_load(self, page: Page) -> None:
        url = page.url
        if url and url != self._last_url:
            self._last_url = url
            await self._emit(EventType.NAVIGATE, None, value=url, url=url)
        try:
            await self.inject(page)
        except InjectionError as exc:
            self._fail(str(exc))
            if self._client is not None:
                await self._client.close()

    # -------------------------------------------------------------------
    # イベント処理
    # -------------------------------------------------------------------

    async def _on_capture(self, data_json: str) -> None:
        """ページ側から送信された操作データを処理する。

        Args:
            data_json: JSON 形式の操作データ
        """
        try:
            data = json.loads(data_json)
            event_type = EventType(data.get("type", ""))
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("不正な操作データを破棄しました: %s", exc)
            return

        descriptor = self.describe_target(data)
        if descriptor is None and event_type not in (EventType.NAVIGATE, EventType.WAIT):
            logger.warning("操作対象の要素を特定できないため破棄しました: %s", data.get("xpath"))
            return

        url = data.get("url") or None
        if event_type == EventType.NAVIGATE:
            url = data.get("value") or url
            # load と history API の両方から同じ遷移が届く
            if not url or url == self._last_url:
                return
        if url:
            self._last_url = url

        event_id = uuid.uuid4().hex
        screenshot = None
        if self._config.screenshot_dir and event_type != EventType.NAVIGATE:
            screenshot = await self._save_screenshot(event_id)
        await self._emit(
            event_type, descriptor,
            value=data.get("value"), url=url, timestamp=data.get("timestamp"),
            event_id=event_id, screenshot=screenshot,
        )

    async def _save_screenshot(self, event_id: str) -> Optional[str]:
        """イベント時点のスクリーンショットを保存し、そのパスを返す。

        保存先は <screenshot_dir>/<セッション ID>/<イベント ID>.png。
        保存に失敗してもイベントは記録する（スクリーンショットなし）。
        """
        page = self._page
        if page is None:
            return None
        path = Path(self._config.screenshot_dir) / self._session_id / f"{event_id}.png"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(path))
        except Exception as exc:
            logger.warning("スクリーンショットの保存に失敗しました: %s (%s)", path, exc)
            return None
        return str(path)

    def describe_target(self, data: dict) -> Optional[ElementDescriptor]:
        """操作データの DOM スナップショットから対象要素の候補を生成する。

        マーカー属性の付いた要素を優先し、なければ XPath で探す。
        """
        html = data.get("html")
        if not html:
            return None
        snapshot = DomSnapshot(html)
        element = snapshot.pop_marked_target()
        if element is None and data.get("xpath"):
            matches = snapshot.select(data["xpath"])
            element = matches[0] if matches else None
        if element is None:
            return None
        return self._generator.generate(snapshot, element)

    async def _emit(
        self,
        event_type: EventType,
        descriptor: Optional[ElementDescriptor],
        value: Optional[str] = None,
        url: Optional[str] = None,
        timestamp: Optional[float] = None,
        event_id: Optional[str] = None,
        screenshot: Optional[str] = None,
    ) -> Optional[RecordedEvent]:
        if self._client is None:
            logger.debug("チャネル未接続のためイベントを破棄しました: %s", event_type.value)
            return None

        def build(sequence: int) -> RecordedEvent:
            fields: dict[str, Any] = {
                "sequence_number": sequence,
                "type": event_type,
                "value": value,
                "url": url,
            }
            if timestamp is not None:
                fields["timestamp"] = timestamp
            if event_id is not None:
                fields["id"] = event_id
            if screenshot is not None:
                fields["screenshot"] = screenshot
            if descriptor is not None:
                fields.update(
                    target=descriptor.element,
                    locator=descriptor.primary,
                    alternates=tuple(descriptor.alternates),
                    ambiguous=descriptor.ambiguous,
                )
            return RecordedEvent(**fields)

        event = await self._client.emit(build)
        if event is not None:
            logger.debug("記録: seq=%d %s", event.sequence_number, event_type.value)
        return event

    # -------------------------------------------------------------------
    # ヘルパー
    # -------------------------------------------------------------------

    def _fail(self, reason: str) -> None:
        if self._manager is None:
            return
        try:
            self._manager.fail(self._session_id, reason)
        except KeyError:
            logger.debug("セッションが既に削除されています: %s", self._session_id)

    @staticmethod
    def _browser_type(page: Page) -> str:
        try:
            name = page.context.browser.browser_type.name
        except AttributeError:
            return "chromium"
        return name if isinstance(name, str) else "chromium"
