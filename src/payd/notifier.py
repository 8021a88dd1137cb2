"""Human-readable status messages for the operator."""

import logging
from collections import deque
from typing import Protocol

log = logging.getLogger("payd.notify")


class Notifier(Protocol):
    def notify(self, message: str) -> None: ...


class LogNotifier:
    def notify(self, message: str) -> None:
        log.info(message)


class MemoryNotifier:
    """Keeps the last ``maxlen`` messages, newest last."""

    def __init__(self, maxlen: int = 200) -> None:
        self.messages: deque[str] = deque(maxlen=maxlen)

    def notify(self, message: str) -> None:
        self.messages.append(message)
