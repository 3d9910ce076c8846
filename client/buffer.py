from typing import Callable, List


class TextBuffer:
    """The editor component as a session sees it.

    Implementations call every ``on_change`` callback with the full text
    whenever the text changes, whether a user typed or ``set_text`` was
    called.
    """

    def on_change(self, callback: Callable[[str], None]):
        raise NotImplementedError

    def set_text(self, text: str):
        raise NotImplementedError

    def get_text(self) -> str:
        raise NotImplementedError


class InMemoryTextBuffer(TextBuffer):
    def __init__(self, text: str = ""):
        self._text = text
        self._callbacks: List[Callable[[str], None]] = []

    def on_change(self, callback: Callable[[str], None]):
        self._callbacks.append(callback)

    def set_text(self, text: str):
        self._text = text
        for callback in list(self._callbacks):
            callback(text)

    def get_text(self) -> str:
        return self._text
