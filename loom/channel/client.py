"""
チャネルクライアント — 再接続・再送付きのエージェント側双方向チャネル

エージェントが記録したイベントにシーケンス番号を割り当て、ACK を受けるまで
保留する。切断時はバックグラウンドで指数バックオフ付きの再接続を行い、
再接続後に INIT（resumeFrom = 最後の ACK）を送ってから保留中のイベントを
シーケンス順に再送する。

主な機能:
  - emit: シーケンス番号の割り当てと送信（順序は送信ロックで保証）
  - ACK 受信で番号以下の保留イベントを破棄
  - 上限付き指数バックオフの再接続（上限到達で ChannelConnectionError）
  - ハートビートの定期送信
  - STOP 受信で保留イベントを破棄し、再接続を取り消して終了
"""

from __future__ import annotations

import asyncio
import functools
import logging
import ssl
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Optional, Protocol

from websockets.exceptions import ConnectionClosed

from ..config import ChannelConfig
from ..errors import ChannelConnectionError
from ..models import RecordedEvent
from .protocol import ChannelMessage, MessageType, ProtocolError, client_ssl_context

logger = logging.getLogger(__name__)

# 接続・送受信で一時的な失敗とみなす例外
_TRANSIENT_ERRORS = (ConnectionClosed, OSError, asyncio.TimeoutError)


class Connection(Protocol):
    """クライアントが使用する接続の最小インターフェース。"""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Connection]]


async def websocket_connector(url: str, ssl_context: Optional[ssl.SSLContext] = None) -> Connection:
    """websockets で接続する既定のコネクター。"""
    from websockets.asyncio.client import connect

    if ssl_context is not None and url.startswith("wss:"):
        return await connect(url, max_size=None, ssl=ssl_context)
    return await connect(url, max_size=None)


class ChannelClient:
    """再接続付きのチャネルクライアント。

    使用例::

        client = ChannelClient(url, session_id, ChannelConfig())
        await client.connect()
        await client.emit(lambda seq: RecordedEvent(sequence_number=seq, ...))
        await client.flush()
    """

    def __init__(
        self,
        url: str,
        session_id: str,
        config: Optional[ChannelConfig] = None,
        connector: Optional[Connector] = None,
        browser_type: str = "chromium",
        user_agent: str = "",
        page_url: str = "",
        on_failure: Optional[Callable[[ChannelConnectionError], Any]] = None,
        on_stop: Optional[Callable[[str], Any]] = None,
    ) -> None:
        """ChannelClient を初期化する。

        Args:
            url: チャネルの URL
            session_id: セッション ID
            config: チャネル設定
            connector: 接続を生成する関数（省略時は websockets）
            browser_type: INIT で通知するブラウザ種別
            user_agent: INIT で通知するユーザーエージェント
            page_url: INIT で通知するページ URL
            on_failure: 再接続が上限に達した時に呼ぶ関数
            on_stop: バックエンドから STOP を受信した時に呼ぶ関数
        """
        self._url = url
        self._session_id = session_id
        self._config = config or ChannelConfig()
        self._connector = connector or functools.partial(
            websocket_connector, ssl_context=client_ssl_context(self._config),
        )
        self._browser_type = browser_type
        self._user_agent = user_agent
        self.page_url = page_url
        self._on_failure = on_failure
        self._on_stop = on_stop

        self._connection: Optional[Connection] = None
        self._pending: OrderedDict[int, RecordedEvent] = OrderedDict()
        self._next_sequence = 1
        self._last_ack = 0
        self._send_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stopped = False
        self._failure: Optional[ChannelConnectionError] = None
        self._stop_reason: Optional[str] = None
        # 保留中のイベントがない間はセットされている
        self._drained = asyncio.Event()
        self._drained.set()

    # -------------------------------------------------------------------
    # 状態
    # -------------------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def last_ack(self) -> int:
        return self._last_ack

    @property
    def pending_sequences(self) -> list[int]:
        return list(self._pending)

    @property
    def failure(self) -> Optional[ChannelConnectionError]:
        return self._failure

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    # -------------------------------------------------------------------
    # 接続
    # -------------------------------------------------------------------

    async def connect(self) -> None:
        """チャネルに接続する。

        初回の接続に失敗した場合も再接続と同じバックオフで再試行する。

        Raises:
            ChannelConnectionError: 試行回数の上限に達した場合
        """
        try:
            await self._open()
            return
        except _TRANSIENT_ERRORS as exc:
            logger.warning("チャネルへの接続に失敗しました: %s (%s)", self._url, exc)
        await self._reconnect_loop()
        if self._failure is not None:
            raise self._failure

    async def _open(self) -> None:
        """接続して INIT を送り、ACK を受けてから保留イベントを再送する。"""
        connection = await asyncio.wait_for(
            self._connector(self._url), self._config.ack_timeout_ms / 1000,
        )
        try:
            await connection.send(ChannelMessage.init(
                self._session_id,
                browser_type=self._browser_type,
                user_agent=self._user_agent,
                url=self.page_url,
                resume_from=self._last_ack,
            ).encode())
            await self._await_init_ack(connection)
        except BaseException:
            await _close_quietly(connection)
            raise

        if self._stopped:
            await _close_quietly(connection)
            return

        async with self._send_lock:
            for event in list(self._pending.values()):
                await connection.send(ChannelMessage.for_event(self._session_id, event).encode())
            self._connection = connection
        if self._pending:
            logger.info(
                "保留中のイベントを再送しました: %s seq=%d..%d",
                self._session_id, next(iter(self._pending)), next(reversed(self._pending)),
            )

        self._reader_task = asyncio.create_task(self._read_loop(connection))
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.debug("チャネルに接続しました: %s", self._url)

    async def _await_init_ack(self, connection: Connection) -> None:
        timeout = self._config.ack_timeout_ms / 1000
        while True:
            raw = await asyncio.wait_for(connection.recv(), timeout)
            try:
                message = ChannelMessage.decode(raw)
            except ProtocolError as exc:
                logger.warning("不正なメッセージを無視します: %s", exc)
                continue
            if message.type == MessageType.ACK:
                self._on_ack(message)
                return
            if message.type == MessageType.STOP:
                await self._handle_stop(str(message.payload.get("reason", "stopped")))
                return
            if message.type == MessageType.ERROR:
                raise ChannelConnectionError(
                    f"チャネルが INIT を拒否しました: {message.payload.get('code')} "
                    f"{message.payload.get('message', '')}"
                )

    def _schedule_reconnect(self) -> None:
        if self._stopped or self._failure is not None:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """指数バックオフで再接続を試行する。"""
        attempts = self._config.reconnect_attempts
        base = self._config.reconnect_base_delay_ms / 1000
        cap = self._config.reconnect_max_delay_ms / 1000
        for attempt in range(1, attempts + 1):
            if self._stopped:
                return
            delay = min(base * (2 ** (attempt - 1)), cap)
            logger.info(
                "チャネルに再接続します（%d/%d, %.2f 秒後）: %s", attempt, attempts, delay, self._url,
            )
            await asyncio.sleep(delay)
            if self._stopped:
                return
            try:
                await self._open()
                return
            except _TRANSIENT_ERRORS as exc:
                logger.warning("再接続に失敗しました（%d/%d）: %s", attempt, attempts, exc)
            except ChannelConnectionError as exc:
                logger.warning("再接続が拒否されました（%d/%d）: %s", attempt, attempts, exc)

        self._failure = ChannelConnectionError(
            f"チャネルへの再接続が上限 {attempts} 回に達しました: {self._url}"
        )
        logger.error("%s", self._failure)
        await self._shutdown()
        if self._on_failure is not None:
            result = self._on_failure(self._failure)
            if asyncio.iscoroutine(result):
                await result

    # -------------------------------------------------------------------
    # 送信
    # -------------------------------------------------------------------

    async def emit(self, build: Callable[[int], RecordedEvent]) -> Optional[RecordedEvent]:
        """シーケンス番号を割り当ててイベントを送信する。

        接続中でなければ保留し、再接続時に再送する。
        停止後・失敗後は送信せずに None を返す。

        Args:
            build: シーケンス番号を受け取って RecordedEvent を生成する関数

        Returns:
            送信（または保留）したイベント
        """
        async with self._send_lock:
            if self._stopped or self._failure is not None:
                logger.debug("停止済みのためイベントを破棄しました: %s", self._session_id)
                return None
            sequence = self._next_sequence
            event = build(sequence)
            if event.sequence_number != sequence:
                raise ValueError(
                    f"シーケンス番号が一致しません: {event.sequence_number} != {sequence}"
                )
            self._next_sequence += 1
            self._pending[sequence] = event
            self._drained.clear()

            connection = self._connection
            if connection is not None:
                try:
                    await connection.send(ChannelMessage.for_event(self._session_id, event).encode())
                except _TRANSIENT_ERRORS as exc:
                    logger.warning("イベントの送信に失敗しました: seq=%d (%s)", sequence, exc)
                    self._connection = None
                    self._schedule_reconnect()
            return event

    async def flush(self, timeout: float = 5.0) -> bool:
        """保留中のイベントがすべて ACK されるまで待機する。

        ACK の受信・停止・再接続の失敗で待機を終える。

        Returns:
            全イベントが ACK された場合は True（停止・失敗・タイムアウト時は False）
        """
        if self._stopped or self._failure is not None:
            return False
        try:
            await asyncio.wait_for(self._drained.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return not self._pending and not self._stopped and self._failure is None

    async def _heartbeat_loop(self) -> None:
        interval = self._config.heartbeat_interval_ms / 1000
        while not self._stopped:
            await asyncio.sleep(interval)
            connection = self._connection
            if connection is None:
                continue
            async with self._send_lock:
                try:
                    await connection.send(ChannelMessage.heartbeat(self._session_id).encode())
                except _TRANSIENT_ERRORS as exc:
                    logger.debug("ハートビートの送信に失敗しました: %s", exc)
                    if self._connection is connection:
                        self._connection = None
                        self._schedule_reconnect()

    # -------------------------------------------------------------------
    # 受信
    # -------------------------------------------------------------------

    async def _read_loop(self, connection: Connection) -> None:
        try:
            while True:
                raw = await connection.recv()
                try:
                    message = ChannelMessage.decode(raw)
                except ProtocolError as exc:
                    logger.warning("不正なメッセージを無視します: %s", exc)
                    continue

                if message.type == MessageType.ACK:
                    self._on_ack(message)
                elif message.type == MessageType.STOP:
                    await self._handle_stop(str(message.payload.get("reason", "stopped")))
                    return
                elif message.type == MessageType.ERROR:
                    logger.warning("バックエンドからエラーを受信しました: %s", message.payload)
        except _TRANSIENT_ERRORS as exc:
            if self._stopped:
                return
            if self._connection is not connection:
                # 置き換え済みの接続
                logger.debug("古い接続が閉じられました: %s (%s)", self._session_id, exc)
                return
            logger.warning("チャネルが切断されました: %s (%s)", self._session_id, exc)
            self._connection = None
            self._schedule_reconnect()

    def _on_ack(self, message: ChannelMessage) -> None:
        try:
            sequence = int(message.payload.get("sequenceNumber", 0))
        except (TypeError, ValueError):
            logger.warning("不正な ACK を無視します: %s", message.payload)
            return
        if sequence > self._last_ack:
            self._last_ack = sequence
        for pending in list(self._pending):
            if pending > sequence:
                break
            del self._pending[pending]
        if not self._pending:
            self._drained.set()

    # -------------------------------------------------------------------
    # 停止
    # -------------------------------------------------------------------

    async def _handle_stop(self, reason: str) -> None:
        logger.info("STOP を受信しました: %s (%s)", self._session_id, reason)
        self._stop_reason = reason
        await self.close()
        if self._on_stop is not None:
            result = self._on_stop(reason)
            if asyncio.iscoroutine(result):
                await result

    async def close(self) -> None:
        """チャネルを閉じる。保留中のイベントは破棄し、再接続を取り消す。"""
        if self._stopped:
            return
        self._stopped = True
        dropped = len(self._pending)
        self._pending.clear()
        if dropped:
            logger.info("未送信のイベントを破棄しました: %s (%d 件)", self._session_id, dropped)
        await self._shutdown()

    async def _shutdown(self) -> None:
        # flush() の待機を解除する
        self._drained.set()
        current = asyncio.current_task()
        for task in (self._reconnect_task, self._heartbeat_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        connection, self._connection = self._connection, None
        if connection is not None:
            await _close_quietly(connection)


async def _close_quietly(connection: Connection) -> None:
    try:
        await connection.close()
    except _TRANSIENT_ERRORS as exc:
        logger.debug("接続のクローズに失敗しました: %s", exc)
