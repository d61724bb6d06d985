"""
Tests for the real-time broadcast hub and the /ws endpoint.

WebSocket tests ping each client first: "pong" is only sent from inside the
receive loop, so after it arrives the client is registered with the hub.
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.common.broadcast import GLOBAL_TOPIC, BroadcastHub, publish, router
from tests.test_helpers import FakeWebSocket


@pytest.fixture
def ws_client():
    app = FastAPI()
    app.include_router(router)
    with TestClient(app) as client:
        yield client


def _sync(ws):
    ws.send_text("ping")
    assert ws.receive_text() == "pong"


class TestBroadcastHub:

    @pytest.mark.asyncio
    async def test_publish_reaches_topic_and_global(self):
        hub = BroadcastHub()
        deal_client, other_client, global_client = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        hub.connect(deal_client, "deal-1")
        hub.connect(other_client, "deal-2")
        hub.connect(global_client)

        delivered = await hub.publish("deal-1", {"type": "deal_stage_changed", "dealId": "deal-1"})

        assert delivered == 2
        assert other_client.sent == []
        event = json.loads(deal_client.sent[0])
        assert event["type"] == "deal_stage_changed"
        assert "timestamp" in event
        assert global_client.sent == deal_client.sent

    @pytest.mark.asyncio
    async def test_publish_without_listeners(self):
        assert await BroadcastHub().publish("deal-1", {"type": "x"}) == 0

    @pytest.mark.asyncio
    async def test_failed_clients_are_dropped(self):
        hub = BroadcastHub()
        good, dead = FakeWebSocket(), FakeWebSocket(fail=True)
        hub.connect(good, "deal-1")
        hub.connect(dead, "deal-1")

        assert await hub.publish("deal-1", {"type": "x"}) == 1
        assert hub.client_count("deal-1") == 1
        assert await hub.publish("deal-1", {"type": "y"}) == 1
        assert len(good.sent) == 2

    @pytest.mark.asyncio
    async def test_relay_skips_sender_and_other_topics(self):
        hub = BroadcastHub()
        sender, peer, outsider, listener = FakeWebSocket(), FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        hub.connect(sender, "deal-1")
        hub.connect(peer, "deal-1")
        hub.connect(outsider, "deal-2")
        hub.connect(listener, GLOBAL_TOPIC)

        assert await hub.relay(sender, "deal-1", '{"typing": true}') == 1
        assert peer.sent == ['{"typing": true}']
        assert sender.sent == outsider.sent == listener.sent == []

    def test_disconnect_removes_empty_topics(self):
        hub = BroadcastHub()
        ws = FakeWebSocket()
        hub.connect(ws, "deal-1")
        hub.disconnect(ws, "deal-1")
        hub.disconnect(ws, "deal-1")
        assert hub.client_count() == 0
        assert hub._topics == {}

    @pytest.mark.asyncio
    async def test_module_publish_swallows_hub_errors(self, monkeypatch):
        from src.common import broadcast

        async def broken(topic, payload):
            raise RuntimeError("hub exploded")

        monkeypatch.setattr(broadcast.hub, "publish", broken)
        await publish("deal-1", {"type": "x"})


class TestWebSocketEndpoint:

    def test_ping_pong(self, ws_client):
        with ws_client.websocket_connect("/ws") as ws:
            _sync(ws)

    def test_relay_within_topic(self, ws_client):
        with ws_client.websocket_connect("/ws?topic=deal-1") as sender, \
                ws_client.websocket_connect("/ws?topic=deal-1") as peer, \
                ws_client.websocket_connect("/ws?topic=deal-2") as outsider:
            _sync(sender)
            _sync(peer)
            _sync(outsider)

            sender.send_text(json.dumps({"type": "typing", "userId": "seller-1"}))

            assert json.loads(peer.receive_text()) == {"type": "typing", "userId": "seller-1"}
            # next frame for these is the pong, so the relay never reached them
            _sync(outsider)
            _sync(sender)

    def test_invalid_json_is_ignored(self, ws_client):
        with ws_client.websocket_connect("/ws?topic=deal-1") as sender, \
                ws_client.websocket_connect("/ws?topic=deal-1") as peer:
            _sync(sender)
            _sync(peer)

            sender.send_text("not json {")
            sender.send_text(json.dumps({"type": "hello"}))

            assert json.loads(peer.receive_text()) == {"type": "hello"}
            _sync(sender)

    def test_binary_frames_are_ignored(self, ws_client):
        with ws_client.websocket_connect("/ws?topic=deal-1") as sender, \
                ws_client.websocket_connect("/ws?topic=deal-1") as peer:
            _sync(sender)
            _sync(peer)

            sender.send_bytes(b"\x00\x01")
            # connection survives the binary frame
            _sync(sender)

            sender.send_text(json.dumps({"type": "hello"}))
            assert json.loads(peer.receive_text()) == {"type": "hello"}

    def test_disconnect_unregisters(self, ws_client):
        from src.common.broadcast import hub

        with ws_client.websocket_connect("/ws?topic=deal-9") as ws:
            _sync(ws)
            assert hub.client_count("deal-9") == 1
        with ws_client.websocket_connect("/ws?topic=deal-10") as ws:
            _sync(ws)
        assert hub.client_count("deal-9") == 0
