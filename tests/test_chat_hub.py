import asyncio

from starlette.websockets import WebSocketState

from chat_hub import ChatHub


class _FakeSocket:
    def __init__(self, hub=None, chat_id=None):
        self.client_state = WebSocketState.CONNECTING
        self.sent = []
        self._hub = hub
        self._chat_id = chat_id

    async def accept(self):
        # Another message lands while the handshake is still in flight
        if self._hub is not None:
            await self._hub.publish(self._chat_id, "INSERT", {"id": "m0"})
        self.client_state = WebSocketState.CONNECTED

    async def send_json(self, payload):
        self.sent.append(payload)


def test_publish_during_handshake_keeps_subscriber():
    hub = ChatHub()
    listener = _FakeSocket()
    joining = _FakeSocket(hub, "c1")

    async def scenario():
        await hub.subscribe("c1", listener)
        await hub.subscribe("c1", joining)
        await hub.publish("c1", "INSERT", {"id": "m1"})

    asyncio.run(scenario())

    assert listener.sent == [{"event": "INSERT", "new": {"id": "m0"}}, {"event": "INSERT", "new": {"id": "m1"}}]
    assert joining.sent == [{"event": "INSERT", "new": {"id": "m1"}}]


def test_connecting_socket_is_not_dropped():
    hub = ChatHub()
    pending = _FakeSocket()
    hub._subscribers["c1"].add(pending)

    asyncio.run(hub.publish("c1", "INSERT", {"id": "m1"}))
    assert pending in hub._subscribers["c1"]
    assert pending.sent == []


def test_closed_socket_is_dropped():
    hub = ChatHub()
    gone = _FakeSocket()
    asyncio.run(hub.subscribe("c1", gone))
    gone.client_state = WebSocketState.DISCONNECTED

    asyncio.run(hub.publish("c1", "INSERT", {"id": "m1"}))
    assert "c1" not in hub._subscribers
    assert gone.sent == []
