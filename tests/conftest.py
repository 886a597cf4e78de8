"""Shared test fixtures for the delayer."""
import pytest
from unittest.mock import AsyncMock, MagicMock

from job_queue.gateway import QueueGateway, QueuedMessage, delivery_timestamp_attribute


NOW = 1_700_000_000


class FakeClock:
    """Settable epoch clock shared by the Delayer and the in-memory gateway."""

    def __init__(self, now: float = NOW):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_message(delivery_timestamp=None, body="This is the body",
                 receipt_handle="12345678", message_id="abcdef"):
    attributes = {}
    if delivery_timestamp is not None:
        attributes = delivery_timestamp_attribute(delivery_timestamp)
    return QueuedMessage(
        body=body,
        receipt_handle=receipt_handle,
        message_id=message_id,
        attributes=attributes,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway():
    """Gateway double: send succeeds, receive returns nothing, delete succeeds."""
    gw = AsyncMock(spec=QueueGateway)
    gw.send.return_value = "fedcba"
    gw.receive.return_value = []
    gw.delete.return_value = None
    return gw


@pytest.fixture
def deliver():
    return MagicMock(name="deliver")


@pytest.fixture
def on_error():
    return MagicMock(name="on_error")
