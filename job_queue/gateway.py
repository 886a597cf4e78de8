"""
Queue Gateway — send / receive / delete against the backing queue.

Backends:
  SqsQueueGateway       Amazon SQS via boto3 (production)
  InMemoryQueueGateway  asyncio-based queue with native delay and
                        visibility timeout semantics (development, tests)

Message attributes use the SQS wire shape throughout:
  {"deliveryTimestamp": {"DataType": "Number", "StringValue": "1767225600"}}
"""
from __future__ import annotations

import abc
import asyncio
import math
import time
import uuid
import structlog
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from job_queue.errors import QueueAckError, QueueReadError, QueueWriteError

logger = structlog.get_logger()

DELIVERY_TIMESTAMP_ATTRIBUTE = "deliveryTimestamp"
ALL_ATTRIBUTES = "All"


# ──────────────────────────────────────────────────────────────
#  Message Model
# ──────────────────────────────────────────────────────────────

def delivery_timestamp_attribute(delivery_timestamp: int) -> dict[str, dict[str, str]]:
    """Build the message attribute that carries the desired delivery time."""
    return {
        DELIVERY_TIMESTAMP_ATTRIBUTE: {
            "DataType": "Number",
            "StringValue": str(int(delivery_timestamp)),
        }
    }


def parse_delivery_timestamp(attributes: Optional[dict[str, Any]]) -> Optional[int]:
    """
    Read the delivery timestamp from message attributes.

    Returns None when the attribute is missing, malformed, non-finite or zero;
    callers treat None as "due now".
    """
    attr = (attributes or {}).get(DELIVERY_TIMESTAMP_ATTRIBUTE)
    if not isinstance(attr, dict):
        return None
    raw = attr.get("StringValue")
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value == 0:
        return None
    return int(value)


@dataclass
class QueuedMessage:
    """A received instance of a message; receipt_handle proves ownership."""
    body: str
    receipt_handle: str
    message_id: str = ""
    attributes: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def delivery_timestamp(self) -> Optional[int]:
        return parse_delivery_timestamp(self.attributes)

    @classmethod
    def from_sqs(cls, raw: dict[str, Any]) -> QueuedMessage:
        return cls(
            body=raw.get("Body", ""),
            receipt_handle=raw["ReceiptHandle"],
            message_id=raw.get("MessageId", ""),
            attributes=raw.get("MessageAttributes") or {},
        )


def _wire_attributes(attributes: Optional[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Strip received attributes down to what SendMessage accepts."""
    wire = {}
    for name, attr in (attributes or {}).items():
        value = {"DataType": attr["DataType"]}
        if "StringValue" in attr:
            value["StringValue"] = attr["StringValue"]
        if "BinaryValue" in attr:
            value["BinaryValue"] = attr["BinaryValue"]
        wire[name] = value
    return wire


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class QueueGateway(abc.ABC):
    """Abstract queue gateway."""

    @abc.abstractmethod
    async def send(
        self,
        body: str,
        delay_seconds: int = 0,
        attributes: Optional[dict[str, Any]] = None,
    ) -> str:
        """Send a message and return its id. Raises QueueWriteError."""
        ...

    @abc.abstractmethod
    async def receive(
        self,
        wait_seconds: int = 20,
        visibility_timeout: int = 10,
        max_messages: int = 5,
        attribute_names: Optional[list[str]] = None,
    ) -> list[QueuedMessage]:
        """
        Long-poll for up to max_messages. Raises QueueReadError.

        attribute_names=None returns every message attribute; [] returns none.
        """
        ...

    @abc.abstractmethod
    async def delete(self, receipt_handle: str) -> None:
        """Acknowledge a received message. Raises QueueAckError."""
        ...

    async def close(self) -> None:
        """Release backend resources."""


# ──────────────────────────────────────────────────────────────
#  SQS Implementation
# ──────────────────────────────────────────────────────────────

class SqsQueueGateway(QueueGateway):
    """
    Gateway backed by an SQS queue.

    boto3 is synchronous, so every call runs in a worker thread and the
    event loop stays free while a long poll is outstanding.
    """

    def __init__(
        self,
        queue_url: str,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        sqs_client=None,
    ):
        if not isinstance(queue_url, str) or not queue_url:
            raise ValueError("queue_url must be a non-empty string")
        self.queue_url = queue_url
        self.region = region
        self.endpoint_url = endpoint_url
        self._sqs = sqs_client

    @property
    def sqs(self):
        """Lazy-load the SQS client with a read timeout above the long-poll wait."""
        if self._sqs is None:
            import boto3
            self._sqs = boto3.client(
                "sqs",
                region_name=self.region,
                endpoint_url=self.endpoint_url or None,
                config=Config(
                    retries={"max_attempts": 3},
                    read_timeout=70,
                    connect_timeout=5,
                ),
            )
        return self._sqs

    async def send(
        self,
        body: str,
        delay_seconds: int = 0,
        attributes: Optional[dict[str, Any]] = None,
    ) -> str:
        params: dict[str, Any] = {
            "QueueUrl": self.queue_url,
            "MessageBody": body,
            "DelaySeconds": int(delay_seconds),
        }
        wire = _wire_attributes(attributes)
        if wire:
            params["MessageAttributes"] = wire
        try:
            response = await asyncio.to_thread(self.sqs.send_message, **params)
        except (ClientError, BotoCoreError) as e:
            raise QueueWriteError(f"send_message failed: {e}", cause=e) from e
        return response["MessageId"]

    async def receive(
        self,
        wait_seconds: int = 20,
        visibility_timeout: int = 10,
        max_messages: int = 5,
        attribute_names: Optional[list[str]] = None,
    ) -> list[QueuedMessage]:
        try:
            response = await asyncio.to_thread(
                self.sqs.receive_message,
                QueueUrl=self.queue_url,
                WaitTimeSeconds=int(wait_seconds),
                VisibilityTimeout=int(visibility_timeout),
                MaxNumberOfMessages=int(max_messages),
                MessageAttributeNames=[ALL_ATTRIBUTES] if attribute_names is None else attribute_names,
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueReadError(f"receive_message failed: {e}", cause=e) from e
        return [QueuedMessage.from_sqs(raw) for raw in response.get("Messages", [])]

    async def delete(self, receipt_handle: str) -> None:
        try:
            await asyncio.to_thread(
                self.sqs.delete_message,
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt_handle,
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueAckError(f"delete_message failed: {e}", cause=e) from e


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _StoredMessage:
    message_id: str
    body: str
    attributes: dict[str, dict[str, Any]]
    visible_at: float
    receipt_handle: str = ""
    receive_count: int = 0


class InMemoryQueueGateway(QueueGateway):
    """
    Single-process queue with SQS-like semantics.

    Sent messages stay invisible for their native delay; received messages
    stay invisible for the visibility timeout and come back unless deleted.
    Each receive issues a fresh receipt handle, so a stale handle cannot
    delete a redelivered instance.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        idle_interval: float = 0.5,
        max_delay_seconds: int = 900,
    ):
        self._clock = clock
        self.idle_interval = idle_interval
        self.max_delay_seconds = max_delay_seconds
        self._messages: dict[str, _StoredMessage] = {}
        self._arrived: Optional[asyncio.Event] = None
        self._arrived_loop: Optional[asyncio.AbstractEventLoop] = None

    def __len__(self) -> int:
        return len(self._messages)

    def _arrival_event(self) -> asyncio.Event:
        # Events bind to the loop they are first awaited on
        loop = asyncio.get_running_loop()
        if self._arrived is None or self._arrived_loop is not loop:
            self._arrived = asyncio.Event()
            self._arrived_loop = loop
        return self._arrived

    async def send(
        self,
        body: str,
        delay_seconds: int = 0,
        attributes: Optional[dict[str, Any]] = None,
    ) -> str:
        if not 0 <= delay_seconds <= self.max_delay_seconds:
            raise QueueWriteError(
                f"DelaySeconds must be between 0 and {self.max_delay_seconds}, got {delay_seconds}"
            )
        message_id = str(uuid.uuid4())
        self._messages[message_id] = _StoredMessage(
            message_id=message_id,
            body=body,
            attributes=_wire_attributes(attributes),
            visible_at=self._clock() + delay_seconds,
        )
        self._arrival_event().set()
        logger.debug("inmemory_message_sent", message_id=message_id, delay_seconds=delay_seconds)
        return message_id

    async def receive(
        self,
        wait_seconds: int = 20,
        visibility_timeout: int = 10,
        max_messages: int = 5,
        attribute_names: Optional[list[str]] = None,
    ) -> list[QueuedMessage]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while True:
            batch = self._take_visible(max_messages, visibility_timeout, attribute_names)
            remaining = deadline - loop.time()
            if batch or remaining <= 0:
                return batch
            arrived = self._arrival_event()
            arrived.clear()
            try:
                await asyncio.wait_for(
                    arrived.wait(),
                    timeout=min(remaining, self.idle_interval),
                )
            except asyncio.TimeoutError:
                pass

    async def delete(self, receipt_handle: str) -> None:
        for message_id, stored in self._messages.items():
            if stored.receipt_handle and stored.receipt_handle == receipt_handle:
                del self._messages[message_id]
                return
        raise QueueAckError(f"Receipt handle is invalid: {receipt_handle}")

    def _take_visible(
        self,
        max_messages: int,
        visibility_timeout: int,
        attribute_names: Optional[list[str]],
    ) -> list[QueuedMessage]:
        now = self._clock()
        visible = sorted(
            (m for m in self._messages.values() if m.visible_at <= now),
            key=lambda m: m.visible_at,
        )
        batch = []
        for stored in visible[:max_messages]:
            stored.receipt_handle = uuid.uuid4().hex
            stored.visible_at = now + visibility_timeout
            stored.receive_count += 1
            batch.append(QueuedMessage(
                body=stored.body,
                receipt_handle=stored.receipt_handle,
                message_id=stored.message_id,
                attributes=_select_attributes(stored.attributes, attribute_names),
            ))
        return batch


def _select_attributes(
    attributes: dict[str, dict[str, Any]],
    attribute_names: Optional[list[str]],
) -> dict[str, dict[str, Any]]:
    if attribute_names is None:
        attribute_names = [ALL_ATTRIBUTES]
    if not attribute_names:
        return {}
    if ALL_ATTRIBUTES in attribute_names:
        return {k: dict(v) for k, v in attributes.items()}
    return {k: dict(v) for k, v in attributes.items() if k in attribute_names}


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_queue_gateway(queue_config=None) -> QueueGateway:
    """Factory: create the gateway for the configured backend."""
    from config.settings import QueueConfig

    config = queue_config or QueueConfig()

    if config.backend == "sqs":
        gateway = SqsQueueGateway(
            queue_url=config.queue_url,
            region=config.region or None,
            endpoint_url=config.endpoint_url or None,
        )
    elif config.backend == "memory":
        gateway = InMemoryQueueGateway()
    else:
        raise ValueError(f"Unknown queue backend: {config.backend}")

    logger.info("queue_gateway_created", backend=config.backend)
    return gateway
