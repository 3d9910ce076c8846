from client.buffer import TextBuffer, InMemoryTextBuffer
from client.session import ClientSession, SessionListener, SessionState

__all__ = ["TextBuffer", "InMemoryTextBuffer", "ClientSession", "SessionListener", "SessionState"]
