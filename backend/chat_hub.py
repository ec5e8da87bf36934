# backend/chat_hub.py
"""
In-process registry of WebSocket subscribers per chat.

Every message inserted through the API is pushed to the sockets
subscribed to its chat as {"event": "INSERT", "new": <message>}.
Single-process only: subscribers on other workers are not reached.
"""

import logging
from collections import defaultdict
from typing import Dict, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

log = logging.getLogger(__name__)


class ChatHub:
    def __init__(self):
        self._subscribers: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def subscribe(self, chat_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._subscribers[chat_id].add(websocket)
        log.info(f"WebSocket subscribed to chat {chat_id} ({len(self._subscribers[chat_id])} active)")

    def unsubscribe(self, chat_id: str, websocket: WebSocket) -> None:
        sockets = self._subscribers.get(chat_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._subscribers[chat_id]
        log.info(f"WebSocket unsubscribed from chat {chat_id}")

    async def publish(self, chat_id: str, event: str, record: dict) -> None:
        """Sends the event to every live subscriber; dead sockets are dropped."""
        payload = {"event": event, "new": record}
        for websocket in list(self._subscribers.get(chat_id, ())):
            if websocket.client_state == WebSocketState.CONNECTING:
                continue
            if websocket.client_state != WebSocketState.CONNECTED:
                self.unsubscribe(chat_id, websocket)
                continue
            try:
                await websocket.send_json(payload)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                log.warning(f"Dropping WebSocket on chat {chat_id} after send failure: {e}")
                self.unsubscribe(chat_id, websocket)


hub = ChatHub()
