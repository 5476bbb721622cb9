"""WebSocket handler streaming live negotiation snapshots."""

import asyncio
import json
import logging
import uuid as uuid_mod

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from fairpay.services.negotiation_monitor import NegotiationSubscription

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


class ConnectionManager:
    """Tracks open WebSocket connections by client id."""

    def __init__(self):
        # client_id -> WebSocket
        self.active_connections: dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket, client_id: str):
        await websocket.accept()
        self.active_connections[client_id] = websocket

    def disconnect(self, client_id: str):
        self.active_connections.pop(client_id, None)

    async def send_json(self, client_id: str, data: dict) -> bool:
        """Send JSON to a specific client; False once the client is gone."""
        ws = self.active_connections.get(client_id)
        if ws is None:
            return False
        try:
            await ws.send_json(data)
        except Exception:
            logger.warning("Failed to send to client %s, removing", client_id)
            self.disconnect(client_id)
            return False
        return True


manager = ConnectionManager()


async def _forward_snapshots(client_id: str, subscription: NegotiationSubscription) -> None:
    async for progress in subscription:
        sent = await manager.send_json(client_id, {"type": "negotiation", "data": progress.to_dict()})
        if not sent:
            return


async def _receive_messages(websocket: WebSocket, client_id: str) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            continue
        # Handle ping / keep-alive
        if isinstance(msg, dict) and msg.get("type") == "ping":
            await manager.send_json(client_id, {"type": "pong"})


@router.websocket("/ws/negotiations/{negotiation_id}")
async def negotiation_updates(websocket: WebSocket, negotiation_id: int):
    """Push every snapshot of one negotiation to the client.

    The first message is the current snapshot (a loading placeholder until
    the first ledger read lands). Supported incoming messages:
        {"type": "ping"}  ->  server replies {"type": "pong"}
    """
    client_id = f"negotiation_{negotiation_id}_{uuid_mod.uuid4().hex[:8]}"
    await manager.connect(websocket, client_id)
    logger.info("Negotiation watcher connected: %s", client_id)

    monitor = websocket.app.state.services.monitor
    subscription = monitor.watch(negotiation_id)
    forward = asyncio.create_task(_forward_snapshots(client_id, subscription))
    receive = asyncio.create_task(_receive_messages(websocket, client_id))
    try:
        done, _ = await asyncio.wait({forward, receive}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("Negotiation WebSocket error for %s: %s", client_id, exc)
    finally:
        for task in (forward, receive):
            task.cancel()
        await asyncio.gather(forward, receive, return_exceptions=True)
        subscription.close()
        manager.disconnect(client_id)
        logger.info("Negotiation watcher disconnected: %s", client_id)
