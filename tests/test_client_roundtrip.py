"""Two client sessions talking through the relay over test-client sockets."""
from client.buffer import InMemoryTextBuffer
from client.session import ClientSession, SessionState


class TestClientTransport:
    __test__ = False

    def __init__(self, ws):
        self.ws = ws

    def emit(self, event, data):
        self.ws.send_json({"event": event, "data": data})

    async def close(self):
        self.ws.close()


def pump(ws, session, count=1):
    for _ in range(count):
        frame = ws.receive_json()
        session.handle(frame["event"], frame["data"])


def open_session(client, name, room_id="r1"):
    ws = client.websocket_connect("/ws")
    ws.__enter__()
    buffer = InMemoryTextBuffer()
    session = ClientSession(TestClientTransport(ws), buffer, room_id, name)
    pump(ws, session)  # connected
    session.join()
    pump(ws, session)  # own joined
    return ws, session, buffer


def test_late_joiner_receives_document_and_edits_flow_both_ways(client):
    ws_a, alice, buffer_a = open_session(client, "Alice")
    assert alice.state == SessionState.JOINED
    buffer_a.set_text("def f():\n    return 1\n")

    ws_b, bob, buffer_b = open_session(client, "Bob")
    assert [m.display_name for m in bob.members] == ["Alice", "Bob"]

    # Alice sees Bob arrive and offers her buffer
    pump(ws_a, alice)
    pump(ws_b, bob)
    assert buffer_b.get_text() == "def f():\n    return 1\n"

    buffer_b.set_text("def f():\n    return 2\n")
    pump(ws_a, alice)
    assert buffer_a.get_text() == "def f():\n    return 2\n"

    # applying Bob's edit did not bounce back to him; his next frame is chat
    assert alice.send_chat("looks good") is True
    pump(ws_b, bob)
    assert [(m.sender_name, m.text) for m in bob.chat_history] == [("Alice", "looks good")]

    ws_b.__exit__(None, None, None)
    pump(ws_a, alice)
    assert [m.display_name for m in alice.members] == ["Alice"]
    ws_a.__exit__(None, None, None)
