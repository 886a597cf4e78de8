"""
Delayer — deliver payloads at arbitrary future timestamps on a queue whose
native delay is capped (SQS: 900 seconds).

A message due further out than the cap is sent with the capped delay. Every
time the poll loop receives it, the delivery timestamp is re-checked: if it
is still in the future the message is resent with a fresh (capped) delay and
the received instance is deleted, so the message walks forward in bounded
steps until it is due.

    enqueue ──▶ due? ──yes──▶ deliver locally, no queue I/O
                  │
                  no ──▶ send(delay=min(remaining, cap))
                                   │
    poll loop ◀────── receive ◀────┘
        │
        ├── due      ──▶ deliver ──▶ delete
        └── not due  ──▶ resend(min(remaining, cap)) ──▶ delete original

Usage:
    delayer = Delayer(gateway, deliver=handle_payload, on_error=report)
    message_id = await delayer.enqueue(payload, delivery_timestamp)
    delayer.start_polling()
    ...
    await delayer.close()
"""
from __future__ import annotations

import asyncio
import inspect
import time
import structlog
from typing import Any, Callable, Optional

from job_queue.errors import (
    DeliveryError, QueueAckError, QueueError, QueueReadError, QueueWriteError,
)
from job_queue.gateway import (
    ALL_ATTRIBUTES, QueueGateway, QueuedMessage, delivery_timestamp_attribute,
)

logger = structlog.get_logger()

MAX_QUEUE_DELAY = 900

DeliveryCallback = Callable[[str], Any]
ErrorCallback = Callable[[BaseException], Any]


def _as_queue_error(error: Exception, error_type: type[QueueError]) -> QueueError:
    if isinstance(error, error_type):
        return error
    return error_type(str(error) or type(error).__name__, cause=error)


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class Delayer:
    """
    Owns the enqueue decision, the poll loop and per-message processing.

    Callbacks may be plain functions or coroutine functions. `deliver` is
    called once per delivered payload; `on_error` once per failed queue
    operation or failed delivery. Neither ever sees an exception escape the
    poll loop.
    """

    def __init__(
        self,
        gateway: QueueGateway,
        deliver: DeliveryCallback,
        on_error: Optional[ErrorCallback] = None,
        *,
        wait_time_seconds: int = 20,
        visibility_timeout: int = 10,
        max_messages: int = 5,
        max_queue_delay: int = MAX_QUEUE_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        if not isinstance(gateway, QueueGateway):
            raise TypeError("gateway must be a QueueGateway")
        if not callable(deliver):
            raise TypeError("deliver must be callable")
        if on_error is not None and not callable(on_error):
            raise TypeError("on_error must be callable")

        self.gateway = gateway
        self._deliver = deliver
        self._on_error = on_error
        self.wait_time_seconds = wait_time_seconds
        self.visibility_timeout = visibility_timeout
        self.max_messages = max_messages
        self.max_queue_delay = max_queue_delay
        self._clock = clock
        self._polling = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        gateway: QueueGateway,
        deliver: DeliveryCallback,
        on_error: Optional[ErrorCallback] = None,
        polling_config=None,
    ) -> Delayer:
        from config.settings import PollingConfig

        config = polling_config or PollingConfig()
        return cls(
            gateway,
            deliver,
            on_error,
            wait_time_seconds=config.wait_time_seconds,
            visibility_timeout=config.visibility_timeout,
            max_messages=config.max_messages,
            max_queue_delay=config.max_queue_delay,
        )

    def _now(self) -> int:
        return round(self._clock())

    # ── Producer path ─────────────────────────────────────────

    async def enqueue(self, payload: str, delivery_timestamp: int) -> Optional[str]:
        """
        Schedule `payload` for delivery at `delivery_timestamp` (epoch seconds).

        Returns the queue message id, or None when the timestamp has already
        passed and the payload was delivered on the spot.

        Raises QueueWriteError when the send fails (not retried) and
        DeliveryError when an immediate delivery fails.
        """
        delivery_timestamp = int(delivery_timestamp)
        delay = delivery_timestamp - self._now()

        if delay <= 0:
            try:
                await _maybe_await(self._deliver(payload))
            except Exception as e:
                raise DeliveryError(f"Immediate delivery failed: {e}", payload=payload, cause=e) from e
            logger.info("message_delivered_immediately", delivery_timestamp=delivery_timestamp)
            return None

        delay_seconds = min(delay, self.max_queue_delay)
        try:
            message_id = await self.gateway.send(
                payload,
                delay_seconds,
                delivery_timestamp_attribute(delivery_timestamp),
            )
        except QueueWriteError:
            raise
        except Exception as e:
            raise QueueWriteError(str(e) or type(e).__name__, cause=e) from e

        logger.info("message_enqueued",
                    message_id=message_id,
                    delivery_timestamp=delivery_timestamp,
                    delay_seconds=delay_seconds,
                    remaining_seconds=delay)
        return message_id

    # ── Poll loop ─────────────────────────────────────────────

    def start_polling(self) -> None:
        """Start the poll loop as a background task. Idempotent."""
        if self._polling:
            return
        self._polling = True
        # A loop that is still finishing its last cycle picks the flag back up
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self._poll_loop(), name="delayer_poll_loop",
            )
        logger.info("polling_started",
                    wait_time_seconds=self.wait_time_seconds,
                    max_messages=self.max_messages)

    def stop_polling(self) -> None:
        """Stop scheduling new cycles. The in-flight cycle runs to completion."""
        if self._polling:
            logger.info("polling_stop_requested")
        self._polling = False

    def is_polling(self) -> bool:
        return self._polling

    async def wait_stopped(self) -> None:
        """Wait until the loop has exited after stop_polling()."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def close(self) -> None:
        self.stop_polling()
        await self.wait_stopped()

    async def _poll_loop(self) -> None:
        while self._polling:
            await self.poll_cycle()
            # Yield between cycles even when the gateway answered without suspending
            await asyncio.sleep(0)
        logger.info("polling_stopped")

    async def poll_cycle(self) -> int:
        """
        One receive plus processing of the whole batch.
        Returns once every received message has settled.
        """
        logger.debug("long_poll_started")
        try:
            messages = await self.gateway.receive(
                wait_seconds=self.wait_time_seconds,
                visibility_timeout=self.visibility_timeout,
                max_messages=self.max_messages,
                attribute_names=[ALL_ATTRIBUTES],
            )
        except Exception as e:
            await self._report(_as_queue_error(e, QueueReadError))
            return 0

        if not messages:
            logger.debug("long_poll_returned_empty")
            return 0

        logger.info("messages_received", count=len(messages))
        results = await asyncio.gather(
            *(self.process_message(m) for m in messages),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                await self._report(result)
        return len(messages)

    # ── Per-message processing ────────────────────────────────

    async def process_message(self, message: QueuedMessage) -> None:
        """Deliver a due message, or push a not-yet-due one further along."""
        delivery_timestamp = message.delivery_timestamp
        now = self._now()
        if delivery_timestamp is None or delivery_timestamp <= now:
            await self._deliver_and_delete(message)
        else:
            await self._resend(message, delivery_timestamp - now)

    async def _deliver_and_delete(self, message: QueuedMessage) -> None:
        try:
            await _maybe_await(self._deliver(message.body))
        except Exception as e:
            # Left undeleted: the queue redelivers it after the visibility timeout
            await self._report(DeliveryError(
                f"Delivery failed for message {message.message_id}: {e}",
                payload=message.body,
                cause=e,
            ))
            return
        logger.info("message_delivered", message_id=message.message_id)
        await self._delete(message)

    async def _resend(self, message: QueuedMessage, delay: int) -> None:
        delay_seconds = min(delay, self.max_queue_delay)
        try:
            new_message_id = await self.gateway.send(
                message.body,
                delay_seconds,
                message.attributes,
            )
        except Exception as e:
            await self._report(_as_queue_error(e, QueueWriteError))
            return
        logger.info("message_resent",
                    message_id=message.message_id,
                    new_message_id=new_message_id,
                    delay_seconds=delay_seconds,
                    remaining_seconds=delay)
        await self._delete(message)

    async def _delete(self, message: QueuedMessage) -> None:
        try:
            await self.gateway.delete(message.receipt_handle)
        except Exception as e:
            await self._report(_as_queue_error(e, QueueAckError))

    async def _report(self, error: Exception) -> None:
        logger.warning("delayer_operation_failed",
                       operation=getattr(error, "operation", "unknown"),
                       error_type=type(error).__name__,
                       error=str(error))
        if self._on_error is None:
            return
        try:
            await _maybe_await(self._on_error(error))
        except Exception as e:
            logger.error("error_callback_failed", error=str(e), exc_info=True)
