"""
Real-time broadcast channel.

Provides the /ws WebSocket endpoint and a server-side publish() for deal,
match and message events. Delivery is best-effort: at most once, no
persistence, no replay. Clients that fail a send are dropped.

Topics are deal ids or user ids. Clients connect with ?topic=<id>; without
one they join the global topic "", which also receives every server event.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

GLOBAL_TOPIC = ""


class BroadcastHub:
    """Topic -> connected sockets."""

    def __init__(self):
        self._topics: Dict[str, Set[WebSocket]] = {}

    def connect(self, websocket: WebSocket, topic: str = GLOBAL_TOPIC) -> None:
        self._topics.setdefault(topic, set()).add(websocket)
        logger.info(f"WS client joined topic {topic!r}. Total: {self.client_count()}")

    def disconnect(self, websocket: WebSocket, topic: str = GLOBAL_TOPIC) -> None:
        clients = self._topics.get(topic)
        if clients is None:
            return
        clients.discard(websocket)
        if not clients:
            del self._topics[topic]
        logger.info(f"WS client left topic {topic!r}. Total: {self.client_count()}")

    def client_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._topics.get(topic, ()))
        return sum(len(clients) for clients in self._topics.values())

    async def _send(self, targets: Set[WebSocket], message: str) -> int:
        dead_clients = set()
        delivered = 0
        for client in targets:
            try:
                await client.send_text(message)
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropping WS client after send failure: {e}")
                dead_clients.add(client)

        for topic in list(self._topics):
            clients = self._topics[topic]
            clients.difference_update(dead_clients)
            if not clients:
                del self._topics[topic]
        return delivered

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """Send a server event to a topic and to global listeners.

        Returns the number of sockets that received it.
        """
        targets = set(self._topics.get(topic, ()))
        targets.update(self._topics.get(GLOBAL_TOPIC, ()))
        if not targets:
            return 0
        message = json.dumps(
            {**payload, "timestamp": datetime.now(timezone.utc).isoformat()},
            default=str,
        )
        return await self._send(targets, message)

    async def relay(self, sender: WebSocket, topic: str, message: str) -> int:
        """Rebroadcast a client message to the other clients on its topic."""
        targets = set(self._topics.get(topic, ()))
        targets.discard(sender)
        if not targets:
            return 0
        return await self._send(targets, message)


hub = BroadcastHub()


async def publish(topic: str, payload: Dict[str, Any]) -> None:
    """Best-effort publish. Never raises into the caller's write path."""
    try:
        await hub.publish(topic, payload)
    except Exception as e:
        logger.warning(f"Broadcast to topic {topic!r} failed: {e}")


@router.websocket("/ws")
async def broadcast_websocket(websocket: WebSocket, topic: str = GLOBAL_TOPIC):
    """WebSocket endpoint: relays client JSON messages to peers on the same topic."""
    await websocket.accept()
    hub.connect(websocket, topic)

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            data = frame.get("text")
            if data is None:
                logger.warning(f"Ignoring binary WS frame on topic {topic!r}")
                continue
            if data == "ping":
                await websocket.send_text("pong")
                continue
            try:
                json.loads(data)
            except ValueError:
                logger.warning(f"Ignoring non-JSON WS message on topic {topic!r}")
                continue
            await hub.relay(websocket, topic, data)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket, topic)
