"""
ChannelEndpoint のテスト

空きポートで実際の websockets サーバーを起動し、接続の受け付け・拒否、
INIT / EVENT に対する ACK、STOP の送信、ChannelClient との結合を検証する。
"""

from __future__ import annotations

import asyncio

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from loom.channel.client import ChannelClient
from loom.channel.endpoint import ChannelEndpoint
from loom.channel.protocol import ChannelMessage, MessageType
from loom.config import ChannelConfig
from loom.models import EventType, SessionStatus
from loom.recorder.session_manager import SessionManager

from conftest import make_event


@pytest.fixture
async def endpoint():
    manager = SessionManager()
    async with ChannelEndpoint(manager, ChannelConfig(host="127.0.0.1", port=0)) as ep:
        yield ep


async def _exchange(ws, message: ChannelMessage) -> ChannelMessage:
    await ws.send(message.encode())
    return ChannelMessage.decode(await ws.recv())


class TestConnection:
    """接続の受け付けテスト。"""

    @pytest.mark.asyncio
    async def test_port_is_assigned(self, endpoint):
        """port=0 で起動した場合は実際のポートが使われること。"""
        assert endpoint.port > 0
        assert endpoint.url_for("s1").endswith(f":{endpoint.port}/recorder/s1")

    def test_url_scheme_follows_tls(self):
        """証明書を設定したエンドポイントの URL は wss になること。"""
        plain = ChannelEndpoint(SessionManager(), ChannelConfig(port=9000))
        secure = ChannelEndpoint(SessionManager(), ChannelConfig(port=9000, ssl_certfile="loom.pem"))
        assert plain.url_for("s1") == "ws://127.0.0.1:9000/recorder/s1"
        assert secure.url_for("s1") == "wss://127.0.0.1:9000/recorder/s1"

    @pytest.mark.asyncio
    async def test_unknown_session_is_rejected(self, endpoint):
        """未知のセッションへの接続は ERROR を返して閉じられること。"""
        async with connect(endpoint.url_for("missing")) as ws:
            message = ChannelMessage.decode(await ws.recv())
            assert message.type == MessageType.ERROR
            assert message.payload["code"] == "unknown_session"
            with pytest.raises(ConnectionClosed) as exc_info:
                await ws.recv()
        assert exc_info.value.rcvd.code == 1008

    @pytest.mark.asyncio
    async def test_init_starts_recording(self, endpoint):
        """INIT でセッションが Recording になり ACK が返ること。"""
        manager = endpoint._manager
        session_id = await manager.start("p1")
        async with connect(endpoint.url_for(session_id)) as ws:
            reply = await _exchange(ws, ChannelMessage.init(session_id, "firefox", "UA/1.0"))
            assert reply.type == MessageType.ACK
            assert reply.payload["sequenceNumber"] == 0
            assert endpoint.is_connected(session_id)
        session = manager.get_session(session_id)
        assert session.status == SessionStatus.RECORDING
        assert session.browser_context.browser_type == "firefox"
        assert session.browser_context.user_agent == "UA/1.0"

    @pytest.mark.asyncio
    async def test_heartbeat_and_bad_message(self, endpoint):
        """HEARTBEAT に応答し、不正なフレームには ERROR を返すこと。"""
        session_id = await endpoint._manager.start("p1")
        async with connect(endpoint.url_for(session_id)) as ws:
            reply = await _exchange(ws, ChannelMessage.heartbeat(session_id))
            assert reply.type == MessageType.HEARTBEAT
            await ws.send("{broken")
            error = ChannelMessage.decode(await ws.recv())
            assert error.type == MessageType.ERROR
            assert error.payload["code"] == "bad_message"


class TestEvents:
    """EVENT の受理テスト。"""

    @pytest.mark.asyncio
    async def test_events_before_init_are_buffered(self, endpoint):
        """INIT 前のイベントはバッファされ、INIT 後に反映されること。"""
        manager = endpoint._manager
        session_id = await manager.start("p1")
        async with connect(endpoint.url_for(session_id)) as ws:
            for seq in (1, 2):
                reply = await _exchange(ws, ChannelMessage.for_event(session_id, make_event(seq)))
                assert reply.payload["sequenceNumber"] == 0
            reply = await _exchange(ws, ChannelMessage.init(session_id))
            assert reply.payload["sequenceNumber"] == 2
        assert [e.sequence_number for e in manager.get_events(session_id)] == [1, 2]

    @pytest.mark.asyncio
    async def test_out_of_order_event_is_dropped(self, endpoint):
        """連続しないイベントは受理されず、ACK は最後の受理番号のままであること。"""
        manager = endpoint._manager
        session_id = await manager.start("p1")
        async with connect(endpoint.url_for(session_id)) as ws:
            await _exchange(ws, ChannelMessage.init(session_id))
            reply = await _exchange(ws, ChannelMessage.for_event(session_id, make_event(2)))
            assert reply.payload["sequenceNumber"] == 0
            reply = await _exchange(ws, ChannelMessage.for_event(session_id, make_event(1)))
            assert reply.payload["sequenceNumber"] == 1
        assert manager.last_sequence(session_id) == 1

    @pytest.mark.asyncio
    async def test_init_on_completed_session(self, endpoint):
        """終了したセッションへの INIT には STOP が返ること。"""
        manager = endpoint._manager
        session_id = await manager.start("p1")
        await manager.stop(session_id)
        async with connect(endpoint.url_for(session_id)) as ws:
            reply = await _exchange(ws, ChannelMessage.init(session_id))
        assert reply.type == MessageType.STOP
        assert reply.payload["reason"] == "session_closed"


class TestClientIntegration:
    """ChannelClient との結合テスト。"""

    @pytest.mark.asyncio
    async def test_three_clicks_then_stop(self, endpoint):
        """3 回のクリックが順に記録され、停止時にクライアントへ STOP が届くこと。"""
        manager = endpoint._manager
        session_id = await manager.start("p1", {"browserType": "chromium"})
        stops: list[str] = []
        client = ChannelClient(
            endpoint.url_for(session_id), session_id,
            ChannelConfig(reconnect_base_delay_ms=10, heartbeat_interval_ms=60_000),
            on_stop=stops.append,
        )
        await client.connect()
        for _ in range(3):
            await client.emit(lambda seq: make_event(seq, EventType.CLICK))
        assert await client.flush(2.0)

        session = await manager.stop(session_id)
        assert session.status == SessionStatus.COMPLETED
        assert [e.sequence_number for e in session.events] == [1, 2, 3]
        assert all(e.type == EventType.CLICK for e in session.events)

        for _ in range(100):
            if client.stopped:
                break
            await asyncio.sleep(0.01)
        assert client.stopped
        assert stops == ["stopped"]
        assert not endpoint.is_connected(session_id)
