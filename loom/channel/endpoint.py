"""
チャネルエンドポイント — websockets によるバックエンド側の双方向チャネル

/recorder/{sessionId} への接続を受け付け、エージェントからの INIT / EVENT を
SessionManager に渡して ACK を返す。1 セッションにつき接続は 1 本であり、
同じセッションへの新しい接続は古い接続を置き換える。

主な機能:
  - INIT: セッションを Recording へ遷移させ、最後の受理番号を ACK
  - EVENT: イベントを受理し、最後の受理番号を ACK
  - HEARTBEAT: 応答を返す
  - send_stop: セッション停止時にエージェントへ STOP を送信
"""

from __future__ import annotations

import logging
from typing import Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from ..config import ChannelConfig
from ..errors import SessionStateError
from ..models import BrowserContextInfo, SessionStatus
from ..recorder.session_manager import SessionManager
from .protocol import (
    ChannelMessage, MessageType, ProtocolError, derive_channel_url, parse_channel_path,
    server_ssl_context,
)

logger = logging.getLogger(__name__)

# 受信メッセージの最大サイズ（DOM スナップショットを含むイベント用）
MAX_MESSAGE_SIZE = 16 * 1024 * 1024


class ChannelEndpoint:
    """記録セッションのチャネルエンドポイント。

    使用例::

        async with ChannelEndpoint(manager, ChannelConfig(port=0)) as endpoint:
            url = endpoint.url_for(session_id)
    """

    def __init__(self, manager: SessionManager, config: Optional[ChannelConfig] = None) -> None:
        """ChannelEndpoint を初期化し、SessionManager の通知先として登録する。

        Args:
            manager: イベントを受理する SessionManager
            config: チャネル設定（port=0 で空きポートを使用）
        """
        self._manager = manager
        self._config = config or ChannelConfig()
        self._server: Optional[Server] = None
        self._connections: dict[str, ServerConnection] = {}
        self._port: Optional[int] = None
        manager.attach_channel(self)

    # -------------------------------------------------------------------
    # ライフサイクル
    # -------------------------------------------------------------------

    async def start(self) -> None:
        """サーバーを起動する。"""
        if self._server is not None:
            return
        self._server = await serve(
            self._handle,
            self._config.host,
            self._config.port,
            max_size=MAX_MESSAGE_SIZE,
            ssl=server_ssl_context(self._config),
        )
        sockets = list(self._server.sockets)
        self._port = sockets[0].getsockname()[1] if sockets else self._config.port
        logger.info(
            "チャネルエンドポイントを起動しました: %s:%d (tls=%s)",
            self._config.host, self._port, self._config.secure,
        )

    async def close(self) -> None:
        """サーバーを停止し、全接続を閉じる。"""
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._connections.clear()
        logger.info("チャネルエンドポイントを停止しました")

    async def serve_forever(self) -> None:
        await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def __aenter__(self) -> "ChannelEndpoint":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def port(self) -> int:
        return self._port if self._port is not None else self._config.port

    def url_for(self, session_id: str) -> str:
        """セッションのチャネル URL を返す（TLS 設定時は wss）。"""
        return derive_channel_url(
            self._config.host, self.port, session_id, self._config.path_prefix, self._config.secure,
        )

    def is_connected(self, session_id: str) -> bool:
        return session_id in self._connections

    # -------------------------------------------------------------------
    # 接続処理
    # -------------------------------------------------------------------

    async def _handle(self, connection: ServerConnection) -> None:
        path = connection.request.path if connection.request is not None else ""
        session_id = parse_channel_path(path, self._config.path_prefix)
        if session_id is None or not self._manager.has_session(session_id):
            logger.warning("未知のセッションへの接続を拒否しました: %s", path)
            await self._send(connection, ChannelMessage.error(
                session_id or "", "unknown_session", f"セッションが存在しません: {path}",
            ))
            await connection.close(code=1008, reason="unknown session")
            return

        previous = self._connections.get(session_id)
        self._connections[session_id] = connection
        if previous is not None and previous is not connection:
            logger.info("セッションの接続を置き換えます: %s", session_id)
            await previous.close(code=1000, reason="replaced")

        logger.debug("チャネルに接続しました: %s", session_id)
        try:
            async for raw in connection:
                await self._dispatch(session_id, connection, raw)
        except ConnectionClosed:
            logger.debug("チャネルが切断されました: %s", session_id)
        finally:
            if self._connections.get(session_id) is connection:
                del self._connections[session_id]

    async def _dispatch(self, session_id: str, connection: ServerConnection, raw: str | bytes) -> None:
        try:
            message = ChannelMessage.decode(raw)
        except ProtocolError as exc:
            logger.warning("不正なメッセージを受信しました: %s (%s)", session_id, exc)
            await self._send(connection, ChannelMessage.error(session_id, "bad_message", str(exc)))
            return

        if message.type == MessageType.INIT:
            await self._on_init(session_id, connection, message)
        elif message.type == MessageType.EVENT:
            await self._on_event(session_id, connection, message)
        elif message.type == MessageType.HEARTBEAT:
            await self._send(connection, ChannelMessage.heartbeat(session_id))
        elif message.type == MessageType.ERROR:
            logger.warning("エージェントからエラーを受信しました: %s %s", session_id, message.payload)
        else:
            logger.debug("処理対象外のメッセージを無視します: %s %s", session_id, message.type.value)

    async def _on_init(self, session_id: str, connection: ServerConnection, message: ChannelMessage) -> None:
        context = BrowserContextInfo(
            browser_type=str(message.payload.get("browserType") or "chromium"),
            user_agent=str(message.payload.get("userAgent") or ""),
        )
        try:
            last = self._manager.confirm_ready(session_id, context)
        except (KeyError, SessionStateError) as exc:
            logger.warning("INIT を受理できません: %s (%s)", session_id, exc)
            await self._send(connection, ChannelMessage.stop(session_id, "session_closed"))
            return
        logger.debug(
            "INIT を受信しました: %s resumeFrom=%s last=%d",
            session_id, message.payload.get("resumeFrom"), last,
        )
        await self._send(connection, ChannelMessage.ack(session_id, last))

    async def _on_event(self, session_id: str, connection: ServerConnection, message: ChannelMessage) -> None:
        try:
            event = message.event()
        except ProtocolError as exc:
            logger.warning("不正なイベントを受信しました: %s (%s)", session_id, exc)
            await self._send(connection, ChannelMessage.error(session_id, "bad_message", str(exc)))
            return

        try:
            self._manager.ingest_event(session_id, event)
            status = self._manager.status(session_id)
            last = self._manager.last_sequence(session_id)
        except KeyError:
            await self._send(connection, ChannelMessage.error(
                session_id, "unknown_session", f"セッションが存在しません: {session_id}",
            ))
            return

        if status in (SessionStatus.STOPPING, SessionStatus.COMPLETED, SessionStatus.ERROR):
            await self._send(connection, ChannelMessage.stop(session_id, "session_closed"))
            return
        await self._send(connection, ChannelMessage.ack(session_id, last))

    # -------------------------------------------------------------------
    # 送信
    # -------------------------------------------------------------------

    async def send_stop(self, session_id: str, reason: str) -> None:
        """セッションの接続へ STOP を送信して接続を閉じる。"""
        connection = self._connections.pop(session_id, None)
        if connection is None:
            return
        await self._send(connection, ChannelMessage.stop(session_id, reason))
        await connection.close(code=1000, reason="stopped")
        logger.debug("STOP を送信しました: %s (%s)", session_id, reason)

    @staticmethod
    async def _send(connection: ServerConnection, message: ChannelMessage) -> None:
        try:
            await connection.send(message.encode())
        except ConnectionClosed:
            logger.debug("切断済みの接続への送信をスキップしました: %s", message.type.value)
