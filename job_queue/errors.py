"""
Queue errors — one type per queue operation, plus delivery failures.

    QueueError
      ├── QueueWriteError   send / resend failed
      ├── QueueReadError    receive failed
      └── QueueAckError     delete failed
    DeliveryError           the delivery callback raised
"""
from __future__ import annotations

from typing import Optional


class QueueError(Exception):
    """Base exception for all queue operations."""

    operation = "queue"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause


class QueueWriteError(QueueError):
    operation = "send"


class QueueReadError(QueueError):
    operation = "receive"


class QueueAckError(QueueError):
    operation = "delete"


class DeliveryError(Exception):
    """Raised when the delivery callback fails for a payload."""

    operation = "deliver"

    def __init__(self, message: str, payload: str = "", cause: Optional[BaseException] = None):
        self.payload = payload
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause
