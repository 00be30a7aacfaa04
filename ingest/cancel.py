"""
Cooperative cancellation shared by the extractor, the fetch engine and retry sleeps.
"""
import threading
from typing import Optional


class Cancelled(Exception):
    """The run was cancelled while work was in progress."""


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def check(self):
        if self._event.is_set():
            raise Cancelled("operation cancelled")

    def sleep(self, seconds: float):
        """Sleep for up to ``seconds``, raising Cancelled as soon as the token is cancelled."""
        if seconds > 0 and self._event.wait(seconds):
            raise Cancelled("operation cancelled")
        self.check()


def ensure_token(cancel: Optional[CancelToken]) -> CancelToken:
    return cancel if cancel is not None else CancelToken()
