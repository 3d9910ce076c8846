"""Terminal participant.

Typed lines are sent as chat. ``/code <text>`` replaces the shared buffer,
``/show`` prints it, ``/quit`` leaves the room.
"""
import argparse
import asyncio
import os
import threading

from client.buffer import InMemoryTextBuffer
from client.connection import WebSocketTransport, run_session
from client.session import ClientSession, SessionListener
from logging_config import setup_logging


class TerminalListener(SessionListener):
    def members_changed(self, members):
        names = ", ".join(m.display_name for m in members) or "-"
        print(f"[members] {names}")

    def notice(self, text):
        print(f"[room] {text}")

    def chat_received(self, message):
        print(f"<{message.sender_name}> {message.text}")

    def error(self, text):
        print(f"[error] {text}")


def start_stdin_reader(loop: asyncio.AbstractEventLoop) -> asyncio.Queue:
    """Feed stdin lines into a queue from a daemon thread.

    A blocked ``input()`` in a daemon thread does not keep the process alive
    once the session ends.
    """
    lines: asyncio.Queue = asyncio.Queue()

    def pump():
        while True:
            try:
                line = input()
            except EOFError:
                line = "/quit"
            try:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            except RuntimeError:
                # the loop has already shut down
                return
            if line == "/quit":
                return

    threading.Thread(target=pump, name="stdin-reader", daemon=True).start()
    return lines


async def read_input(session: ClientSession, buffer: InMemoryTextBuffer):
    lines = start_stdin_reader(asyncio.get_running_loop())
    while True:
        line = await lines.get()
        if line == "/quit":
            await session.leave()
            return
        if line == "/show":
            print(buffer.get_text())
        elif line.startswith("/code "):
            buffer.set_text(line[len("/code "):])
        else:
            session.send_chat(line)


async def main(url: str, room_id: str, display_name: str):
    buffer = InMemoryTextBuffer()
    transport = WebSocketTransport(url)
    session = ClientSession(transport, buffer, room_id, display_name, TerminalListener())
    reader = asyncio.create_task(read_input(session, buffer))
    try:
        await run_session(session, transport)
    finally:
        reader.cancel()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Join a roomsync room from the terminal")
    parser.add_argument("--url", default=os.getenv("RELAY_URL", "ws://localhost:8000/ws"))
    parser.add_argument("--room", required=True)
    parser.add_argument("--name", required=True)
    args = parser.parse_args()

    setup_logging(log_level=os.getenv("LOG_LEVEL", "WARNING"))
    asyncio.run(main(args.url, args.room, args.name))
