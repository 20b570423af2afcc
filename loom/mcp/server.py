"""
loom MCP Server — 記録セッションとロケーター生成の MCP ツール

FastMCP を使用して、AI エージェントから記録の開始・停止・状態確認と
ロケーター候補の生成を行う MCP サーバーを提供する。

ツール一覧:
  - recorder_start: ブラウザを起動して記録を開始
  - recorder_stop: 記録を停止してセッションを YAML に保存
  - recorder_status: セッションの状態一覧
  - recorder_events: セッションの記録済みイベント
  - locator_candidates: HTML スナップショット上の要素のロケーター候補
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from fastmcp import FastMCP

from ..config import LoomConfig, load_config_from_env
from ..errors import LoomError
from ..locator.descriptor import DescriptorGenerator
from ..locator.dom import DomSnapshot
from ..recorder.service import RecorderService
from ..recorder.session_store import SessionStore

logger = logging.getLogger(__name__)


def _dump(data: object) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2)


def create_server(
    config: Optional[LoomConfig] = None,
    store: Optional[SessionStore] = None,
    output_dir: Path = Path("recordings"),
) -> FastMCP:
    """loom MCP サーバーを生成する。

    Args:
        config: loom の設定。None の場合は環境変数から読み込む。
        store: セッションストア（省略時はプロセス内ストア）
        output_dir: セッション YAML の出力先

    Returns:
        設定済みの FastMCP サーバーインスタンス
    """
    if config is None:
        config = load_config_from_env()

    mcp = FastMCP("loom-recorder")
    service = RecorderService(config, store=store, output_dir=output_dir)
    generator = DescriptorGenerator(
        config.healing.tracked_attributes, config.healing.max_alternates,
    )

    # -------------------------------------------------------------------
    # 記録ツール
    # -------------------------------------------------------------------

    @mcp.tool
    async def recorder_start(
        project_id: str,
        url: str,
        browser_type: str = "chromium",
        headless: bool = False,
    ) -> str:
        """Launch a browser on the URL and start recording user actions.

        Args:
            project_id: Project identifier the session belongs to
            url: Initial URL to open
            browser_type: chromium / chrome / msedge / firefox / webkit
            headless: Run the browser without a window

        Returns:
            JSON with the session id and status
        """
        try:
            session_id = await service.start_recording(project_id, url, {
                "browser_type": browser_type,
                "headless": headless,
                "base_url": url,
            })
        except LoomError as exc:
            logger.warning("記録を開始できません: %s", exc)
            return _dump({"error": str(exc)})
        status = service.manager.status(session_id)
        return _dump({"sessionId": session_id, "status": status.value})

    @mcp.tool
    async def recorder_stop(session_id: str) -> str:
        """Stop a recording session and export it as YAML.

        Args:
            session_id: Session id returned by recorder_start

        Returns:
            JSON with the final status, event count and export path
        """
        try:
            session, path = await service.stop_recording(session_id)
        except KeyError as exc:
            return _dump({"error": str(exc)})
        return _dump({
            "sessionId": session.id,
            "status": session.status.value,
            "events": len(session.events),
            "path": str(path) if path else None,
            "error": session.error,
        })

    @mcp.tool
    async def recorder_status(session_id: Optional[str] = None) -> str:
        """Show the status of one or all recording sessions.

        Args:
            session_id: Session id. None lists every session.

        Returns:
            JSON list of sessions
        """
        if session_id is not None:
            try:
                sessions = [service.manager.get_session(session_id)]
            except KeyError as exc:
                return _dump({"error": str(exc)})
        else:
            sessions = service.manager.list_sessions()
        return _dump([
            {
                "sessionId": s.id,
                "projectId": s.project_id,
                "status": s.status.value,
                "events": len(s.events),
                "error": s.error,
            }
            for s in sessions
        ])

    @mcp.tool
    async def recorder_events(session_id: str) -> str:
        """Return the recorded events of a session in sequence order.

        Args:
            session_id: Session id

        Returns:
            JSON list of events
        """
        try:
            events = service.manager.get_events(session_id)
        except KeyError as exc:
            return _dump({"error": str(exc)})
        return _dump([e.to_wire() for e in events])

    # -------------------------------------------------------------------
    # ロケーターツール
    # -------------------------------------------------------------------

    @mcp.tool
    async def locator_candidates(html: str, xpath: str) -> str:
        """Generate ranked locator candidates for an element in an HTML snapshot.

        Args:
            html: Page HTML
            xpath: XPath of the target element

        Returns:
            JSON with the primary locator, alternates and ambiguity flag
        """
        snapshot = DomSnapshot(html)
        matches = snapshot.select(xpath)
        if not matches:
            return _dump({"error": f"要素が見つかりません: {xpath}"})
        descriptor = generator.generate(snapshot, matches[0])
        return _dump({
            "element": descriptor.element.to_wire(),
            "primary": descriptor.primary.to_wire() if descriptor.primary else None,
            "alternates": [c.to_wire() for c in descriptor.alternates],
            "ambiguous": descriptor.ambiguous,
        })

    return mcp
