"""
チャネルプロトコルのテスト

メッセージの JSON 形式、EVENT ペイロードの検証、チャネル URL の導出を確認する。
"""

from __future__ import annotations

import json
import ssl

import pytest

from loom.channel.protocol import (
    ChannelMessage,
    MessageType,
    ProtocolError,
    channel_path,
    client_ssl_context,
    derive_channel_url,
    parse_channel_path,
    server_ssl_context,
)
from loom.config import ChannelConfig

from conftest import make_event


class TestChannelMessage:
    """ChannelMessage のテスト。"""

    def test_encode_uses_camel_case(self):
        """ワイヤー形式のキーが camelCase であること。"""
        data = json.loads(ChannelMessage.ack("s1", 7).encode())
        assert data == {"type": "ACK", "sessionId": "s1", "payload": {"sequenceNumber": 7}}

    def test_init_payload(self):
        message = ChannelMessage.init("s1", "firefox", "UA", "http://x/", resume_from=3)
        assert message.payload == {
            "browserType": "firefox", "userAgent": "UA", "url": "http://x/", "resumeFrom": 3,
        }

    def test_event_round_trip(self):
        """EVENT メッセージからイベントが復元できること。"""
        event = make_event(5, timestamp=1.0)
        raw = ChannelMessage.for_event("s1", event).encode()
        decoded = ChannelMessage.decode(raw)
        assert decoded.type == MessageType.EVENT
        assert decoded.event() == event

    @pytest.mark.parametrize("raw", [
        "not json",
        '{"sessionId": "s1"}',
        '{"type": "NOPE", "sessionId": "s1"}',
    ])
    def test_decode_invalid(self, raw):
        """不正なフレームは ProtocolError になること。"""
        with pytest.raises(ProtocolError):
            ChannelMessage.decode(raw)

    def test_event_on_non_event_message(self):
        with pytest.raises(ProtocolError, match="EVENT"):
            ChannelMessage.heartbeat("s1").event()

    def test_invalid_event_payload(self):
        """検証に失敗するイベントは ProtocolError になること。"""
        message = ChannelMessage(type=MessageType.EVENT, session_id="s1", payload={
            "sequenceNumber": 1, "type": "click",
        })
        with pytest.raises(ProtocolError, match="不正なイベント"):
            message.event()


class TestChannelPath:
    """チャネルパスと URL の導出テスト。"""

    def test_path_round_trip(self):
        path = channel_path("abc 1")
        assert path == "/recorder/abc%201"
        assert parse_channel_path(path) == "abc 1"

    @pytest.mark.parametrize("path", ["/other/abc", "/recorder/", "/recorder/a/b"])
    def test_parse_rejects(self, path):
        assert parse_channel_path(path) is None

    def test_parse_ignores_query(self):
        assert parse_channel_path("/recorder/abc?x=1") == "abc"

    @pytest.mark.parametrize("secure,expected", [
        (False, "ws://127.0.0.1:8765/recorder/s1"),
        (True, "wss://127.0.0.1:8765/recorder/s1"),
    ])
    def test_scheme_follows_endpoint_tls(self, secure, expected):
        """スキームはエンドポイントの TLS 設定に従うこと。"""
        assert derive_channel_url("127.0.0.1", 8765, "s1", secure=secure) == expected

    def test_ipv6_host(self):
        assert derive_channel_url("::1", 9000, "s1", "/ws") == "ws://[::1]:9000/ws/s1"

    def test_ssl_context_disabled_by_default(self):
        """証明書を設定しない場合は SSLContext を作らないこと。"""
        config = ChannelConfig()
        assert config.secure is False
        assert server_ssl_context(config) is None
        assert client_ssl_context(config) is None

    def test_client_ssl_context_verifies(self):
        context = client_ssl_context(ChannelConfig(ssl_certfile="cert.pem"))
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname is True
