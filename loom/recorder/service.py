"""
RecorderService — ブラウザ起動から記録・停止・エクスポートまでの統合

SessionManager・ChannelEndpoint・InstrumentationAgent・ExportQueue を組み合わせ、
CLI と MCP サーバーから共通に使用する記録フローを提供する。

主な機能:
  - start_recording: セッション作成 → ブラウザ起動 → 遷移 → エージェント接続
  - stop_recording: 保留イベントの送信 → セッション停止 → ブラウザ終了 → YAML 出力
  - wait_for_close: ユーザーがブラウザを閉じるまで待機
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Optional

from ..channel.endpoint import ChannelEndpoint
from ..config import LoomConfig
from ..errors import ChannelConnectionError, InjectionError
from ..models import BrowserConfig, RecordingSession, SessionStatus
from .agent import InstrumentationAgent
from .export import ExportQueue, YamlSessionExporter
from .session_manager import SessionManager
from .session_store import SessionStore

if TYPE_CHECKING:
    from playwright.async_api import Browser, Page, Playwright

logger = logging.getLogger(__name__)


@dataclass
class _ActiveRecording:
    playwright: Playwright
    browser: Browser
    page: Page
    agent: InstrumentationAgent


class RecorderService:
    """記録フロー全体を管理する。

    使用例::

        async with RecorderService(config, output_dir=Path("recordings")) as service:
            session_id = await service.start_recording("demo", "https://example.com")
            await service.wait_for_close(session_id)
            session, path = await service.stop_recording(session_id)
    """

    def __init__(
        self,
        config: Optional[LoomConfig] = None,
        store: Optional[SessionStore] = None,
        output_dir: Path = Path("recordings"),
    ) -> None:
        self._config = config or LoomConfig()
        self._manager = SessionManager(store)
        self._endpoint = ChannelEndpoint(self._manager, self._config.channel)
        self._exports = ExportQueue(YamlSessionExporter(output_dir), workers=1)
        self._active: dict[str, _ActiveRecording] = {}
        self._started = False

    @property
    def manager(self) -> SessionManager:
        return self._manager

    @property
    def endpoint(self) -> ChannelEndpoint:
        return self._endpoint

    async def start(self) -> None:
        if self._started:
            return
        await self._endpoint.start()
        await self._exports.start()
        self._started = True

    async def close(self) -> None:
        """実行中の記録をすべて停止し、エンドポイントを閉じる。"""
        for session_id in list(self._active):
            await self.stop_recording(session_id, export=False)
        if self._started:
            await self._exports.shutdown()
            await self._endpoint.close()
            self._started = False

    async def __aenter__(self) -> "RecorderService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # -------------------------------------------------------------------
    # 記録
    # -------------------------------------------------------------------

    async def start_recording(
        self,
        project_id: str,
        url: str,
        browser_config: BrowserConfig | Mapping[str, Any] | None = None,
    ) -> str:
        """ブラウザを起動して記録を開始する。

        Args:
            project_id: プロジェクト ID
            url: 記録開始 URL
            browser_config: ブラウザ設定

        Returns:
            セッション ID

        Raises:
            InvalidConfigError: 設定が不正な場合
            InjectionError: 記録スクリプトを注入できなかった場合
            ChannelConnectionError: チャネルに接続できなかった場合
        """
        from playwright.async_api import async_playwright

        await self.start()
        session_id = await self._manager.start(project_id, browser_config)
        config = self._manager.get_session(session_id).browser_config

        pw = await async_playwright().start()
        try:
            browser_type = pw.firefox if config.browser_type == "firefox" else (
                pw.webkit if config.browser_type == "webkit" else pw.chromium
            )
            launch_kwargs: dict = {"headless": config.headless}
            if config.browser_type in ("chrome", "msedge"):
                launch_kwargs["channel"] = config.browser_type
            browser = await browser_type.launch(**launch_kwargs)
            context = await browser.new_context(
                viewport={"width": config.viewport_width, "height": config.viewport_height},
            )
            page = await context.new_page()
            await page.goto(url)
            await page.wait_for_load_state("domcontentloaded")

            agent = InstrumentationAgent(session_id, self._config, manager=self._manager)
            await agent.attach(page, channel_url=self._endpoint.url_for(session_id))
        except (InjectionError, ChannelConnectionError):
            await pw.stop()
            raise
        except Exception as exc:
            self._manager.fail(session_id, f"ブラウザの起動に失敗しました: {exc}")
            await pw.stop()
            raise

        self._active[session_id] = _ActiveRecording(pw, browser, page, agent)
        logger.info("記録中: %s (%s)", url, session_id)
        return session_id

    async def wait_for_close(self, session_id: str) -> None:
        """記録中のページが閉じられるまで待機する。"""
        active = self._active.get(session_id)
        if active is None:
            return
        closed = asyncio.Event()
        active.page.once("close", lambda *_: closed.set())
        if active.page.is_closed():
            return
        await closed.wait()

    async def stop_recording(
        self,
        session_id: str,
        export: bool = True,
    ) -> tuple[RecordingSession, Optional[Path]]:
        """記録を停止する。

        Args:
            session_id: セッション ID
            export: YAML に出力するか

        Returns:
            (停止後のセッション, 出力したファイルのパス)
        """
        active = self._active.pop(session_id, None)
        if active is not None:
            await active.agent.detach()

        session = await self._manager.stop(session_id)

        if active is not None:
            try:
                await active.browser.close()
            except Exception as exc:
                logger.debug("ブラウザのクローズをスキップ: %s", exc)
            await active.playwright.stop()

        path: Optional[Path] = None
        if export and self._started and session.status == SessionStatus.COMPLETED:
            future = await self._exports.submit(session)
            path = await future
        return session, path
