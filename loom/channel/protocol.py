"""
チャネルプロトコル — ページとバックエンド間の JSON メッセージ定義

全メッセージは {"type": ..., "sessionId": ..., "payload": {...}} 形式の
テキストフレームとして送受信する。

メッセージ種別:
  INIT      : ページ → バックエンド（browserType, userAgent, url, resumeFrom）
  EVENT     : ページ → バックエンド（RecordedEvent）
  HEARTBEAT : 双方向（timestamp）
  ACK       : バックエンド → ページ（最後に受理した sequenceNumber）
  STOP      : バックエンド → ページ（reason）
  ERROR     : 双方向（code, message）
"""

from __future__ import annotations

import json
import ssl
import time
from enum import Enum
from typing import Any, Optional
from urllib.parse import quote, unquote, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..config import ChannelConfig
from ..errors import LoomError
from ..models import RecordedEvent

DEFAULT_PATH_PREFIX = "/recorder"


class ProtocolError(LoomError):
    """不正なメッセージを受信した場合のエラー。"""


class MessageType(str, Enum):
    """チャネルメッセージの種別。"""

    INIT = "INIT"
    EVENT = "EVENT"
    HEARTBEAT = "HEARTBEAT"
    ACK = "ACK"
    STOP = "STOP"
    ERROR = "ERROR"


class ChannelMessage(BaseModel):
    """チャネルメッセージ。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: MessageType
    session_id: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)

    # -------------------------------------------------------------------
    # 変換
    # -------------------------------------------------------------------

    def encode(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), ensure_ascii=False)

    @classmethod
    def decode(cls, raw: str | bytes) -> "ChannelMessage":
        """テキストフレームをメッセージに変換する。

        Raises:
            ProtocolError: JSON として不正、または必須フィールドがない場合
        """
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise ProtocolError(f"不正なメッセージです: {exc.errors()[0]['msg']}") from exc

    def event(self) -> RecordedEvent:
        """EVENT メッセージの RecordedEvent を返す。

        Raises:
            ProtocolError: EVENT 以外、またはイベントが不正な場合
        """
        if self.type != MessageType.EVENT:
            raise ProtocolError(f"EVENT メッセージではありません: {self.type.value}")
        try:
            return RecordedEvent.model_validate(self.payload)
        except ValidationError as exc:
            raise ProtocolError(f"不正なイベントです: {exc.errors()[0]['msg']}") from exc

    # -------------------------------------------------------------------
    # ファクトリ
    # -------------------------------------------------------------------

    @classmethod
    def init(
        cls,
        session_id: str,
        browser_type: str = "chromium",
        user_agent: str = "",
        url: str = "",
        resume_from: int = 0,
    ) -> "ChannelMessage":
        return cls(type=MessageType.INIT, session_id=session_id, payload={
            "browserType": browser_type,
            "userAgent": user_agent,
            "url": url,
            "resumeFrom": resume_from,
        })

    @classmethod
    def for_event(cls, session_id: str, event: RecordedEvent) -> "ChannelMessage":
        return cls(type=MessageType.EVENT, session_id=session_id, payload=event.to_wire())

    @classmethod
    def ack(cls, session_id: str, sequence_number: int) -> "ChannelMessage":
        return cls(
            type=MessageType.ACK, session_id=session_id,
            payload={"sequenceNumber": sequence_number},
        )

    @classmethod
    def heartbeat(cls, session_id: str) -> "ChannelMessage":
        return cls(
            type=MessageType.HEARTBEAT, session_id=session_id,
            payload={"timestamp": time.time() * 1000.0},
        )

    @classmethod
    def stop(cls, session_id: str, reason: str = "stopped") -> "ChannelMessage":
        return cls(type=MessageType.STOP, session_id=session_id, payload={"reason": reason})

    @classmethod
    def error(cls, session_id: str, code: str, message: str) -> "ChannelMessage":
        return cls(
            type=MessageType.ERROR, session_id=session_id,
            payload={"code": code, "message": message},
        )


# ---------------------------------------------------------------------------
# URL の導出
# ---------------------------------------------------------------------------

def channel_path(session_id: str, prefix: str = DEFAULT_PATH_PREFIX) -> str:
    """セッションのチャネルパスを返す。"""
    return f"{prefix.rstrip('/')}/{quote(session_id, safe='')}"


def parse_channel_path(path: str, prefix: str = DEFAULT_PATH_PREFIX) -> Optional[str]:
    """チャネルパスからセッション ID を取り出す。

    Returns:
        セッション ID（パスが一致しない場合は None）
    """
    base = prefix.rstrip("/") + "/"
    path = urlsplit(path).path
    if not path.startswith(base):
        return None
    session_id = unquote(path[len(base):])
    if not session_id or "/" in session_id:
        return None
    return session_id


def derive_channel_url(
    host: str,
    port: int,
    session_id: str,
    prefix: str = DEFAULT_PATH_PREFIX,
    secure: bool = False,
) -> str:
    """エンドポイントの設定からチャネルの URL を導出する。

    接続するのは Python 側のクライアントであり、記録中のページではない。
    スキームはページの location ではなくエンドポイントの TLS 設定に従い、
    TLS が有効な場合は wss、それ以外では ws を使用する。

    Args:
        host: エンドポイントのホスト名
        port: エンドポイントのポート番号
        session_id: セッション ID
        prefix: セッション ID の前に付くパス
        secure: エンドポイントが TLS で待ち受けているか

    Returns:
        チャネルの URL
    """
    scheme = "wss" if secure else "ws"
    netloc_host = f"[{host}]" if ":" in host and not host.startswith("[") else host
    return urlunsplit((scheme, f"{netloc_host}:{port}", channel_path(session_id, prefix), "", ""))


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------

def server_ssl_context(config: ChannelConfig) -> Optional[ssl.SSLContext]:
    """エンドポイント用の SSLContext を返す（TLS 無効時は None）。"""
    if not config.secure:
        return None
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(config.ssl_certfile, config.ssl_keyfile or None)
    return context


def client_ssl_context(config: ChannelConfig) -> Optional[ssl.SSLContext]:
    """クライアント用の SSLContext を返す（TLS 無効時は None）。

    ssl_cafile を指定しない場合はシステムの証明書ストアで検証する。
    """
    if not config.secure:
        return None
    return ssl.create_default_context(cafile=config.ssl_cafile or None)
