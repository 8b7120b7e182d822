from __future__ import annotations

import logging
from collections import deque
from typing import Deque

logger = logging.getLogger(__name__)


class LoggingStatusSink:
    """Status sink that forwards every message to the log."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def display(self, text: str) -> None:
        logger.log(self._level, "status: %s", text)


class RecordingStatusSink:
    """Keeps the latest status text plus a short history, like a status label."""

    def __init__(self, history: int = 50) -> None:
        self._text = ""
        self._history: Deque[str] = deque(maxlen=max(1, history))

    @property
    def text(self) -> str:
        return self._text

    @property
    def history(self) -> list[str]:
        return list(self._history)

    def display(self, text: str) -> None:
        self._text = text
        self._history.append(text)
        logger.debug("status: %s", text)


__all__ = ["LoggingStatusSink", "RecordingStatusSink"]
