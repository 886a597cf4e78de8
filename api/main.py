"""
FastAPI Application — HTTP surface for the delayer.

Provides:
- Enqueue endpoint: schedule a payload for a future delivery time
- Polling control: start / stop the poll loop
- Health endpoint reporting the polling state and failure counts

The poll loop runs inside the application process; it is started in the
lifespan when `polling.autostart` is set and shut down cleanly on exit.

Run:
    uvicorn api.main:create_app --factory
"""
from __future__ import annotations

import json
import time
import structlog
from collections import Counter
from typing import Any, Optional, Union
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, model_validator

from config.settings import Settings, get_settings
from delivery.sinks import create_delivery, outlasts_visibility_timeout
from job_queue.delayer import Delayer
from job_queue.errors import DeliveryError, QueueWriteError
from job_queue.gateway import QueueGateway, create_queue_gateway
from utils.logging import configure_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    payload: Union[str, dict[str, Any], list[Any]]
    deliver_at: Optional[int] = None       # epoch seconds
    delay_seconds: Optional[int] = None    # relative to now

    @model_validator(mode="after")
    def _one_schedule(self):
        if (self.deliver_at is None) == (self.delay_seconds is None):
            raise ValueError("Provide exactly one of deliver_at or delay_seconds")
        return self

    def body(self) -> str:
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload)

    def delivery_timestamp(self) -> int:
        if self.deliver_at is not None:
            return self.deliver_at
        return round(time.time()) + self.delay_seconds


class EnqueueResponse(BaseModel):
    message_id: Optional[str]
    delivery_timestamp: int
    delivered_immediately: bool


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings = None,
    gateway: QueueGateway = None,
    delivery=None,
) -> FastAPI:
    """Build the app; collaborators default to what settings describe."""
    settings = settings or get_settings()
    if gateway is None:
        gateway = create_queue_gateway(settings.queue)
    if delivery is None:
        delivery = create_delivery(settings.delivery)

    error_counts: Counter[str] = Counter()

    def report_error(error: Exception) -> None:
        # Already logged by the delayer
        error_counts[getattr(error, "operation", "unknown")] += 1

    delayer = Delayer.from_config(gateway, delivery, report_error, settings.polling)
    if outlasts_visibility_timeout(delivery, settings.polling.visibility_timeout):
        logger.warning("delivery_may_outlast_visibility_timeout",
                       worst_case_seconds=delivery.worst_case_seconds,
                       visibility_timeout=settings.polling.visibility_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.logging.level, settings.logging.json)
        if settings.polling.autostart:
            delayer.start_polling()
        logger.info("delayer_service_started",
                    queue_backend=settings.queue.backend,
                    polling=delayer.is_polling())
        yield

        await delayer.close()
        close = getattr(delivery, "close", None)
        if close is not None:
            await close()
        await gateway.close()
        logger.info("delayer_service_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Delayed message delivery beyond the queue's native delay ceiling",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.delayer = delayer
    app.state.settings = settings
    app.state.error_counts = error_counts

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "polling": delayer.is_polling(),
            "queue_backend": settings.queue.backend,
            "errors": dict(error_counts),
        }

    @app.post("/api/v1/messages", response_model=EnqueueResponse)
    async def enqueue_message(req: EnqueueRequest):
        delivery_timestamp = req.delivery_timestamp()
        try:
            message_id = await delayer.enqueue(req.body(), delivery_timestamp)
        except QueueWriteError as e:
            logger.error("enqueue_failed", error=str(e))
            raise HTTPException(status_code=502, detail=f"Queue write failed: {e}")
        except DeliveryError as e:
            logger.error("immediate_delivery_failed", error=str(e))
            raise HTTPException(status_code=500, detail=f"Delivery failed: {e}")

        return EnqueueResponse(
            message_id=message_id,
            delivery_timestamp=delivery_timestamp,
            delivered_immediately=message_id is None,
        )

    @app.post("/api/v1/polling/start")
    async def start_polling():
        delayer.start_polling()
        return {"polling": delayer.is_polling()}

    @app.post("/api/v1/polling/stop")
    async def stop_polling():
        delayer.stop_polling()
        return {"polling": delayer.is_polling()}

    return app
