"""
Delivery Webhook Service

FastAPI app that receives email delivery webhooks from SendPulse and SendGrid.

Responsibilities:
- Check the shared webhook token (when configured)
- Normalize the provider payload into DeliveryEvents
- Publish them to the delivery events stream for the worker
- Return 200 quickly so providers do not retry
"""

import hmac
import json
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request

from basecore.logging import setup_logging
from basecore.redis import get_redis_client
from basecore.settings import get_settings

from engagement_engine.errors import ProviderError
from engagement_engine.providers import get_webhook_adapter
from engagement_engine.streams.groups import ensure_engagement_streams
from engagement_engine.streams.producer import DeliveryEventProducer

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Delivery Webhook",
    description="Receives email delivery webhooks and publishes to Redis Streams",
    version="1.0.0",
)


@app.on_event("startup")
async def startup():
    """Ensure Redis streams exist on startup."""
    try:
        ensure_engagement_streams(get_redis_client())
        logger.info("Delivery webhook service started")
    except Exception as e:
        logger.error(f"Failed to initialize streams: {e}")
        raise


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "delivery-webhook"}


def check_token(request: Request) -> None:
    expected = get_settings().WEBHOOK_TOKEN
    if not expected:
        return
    received = request.query_params.get("token") or request.headers.get("X-Webhook-Token", "")
    if not hmac.compare_digest(received.encode(), expected.encode()):
        logger.warning("Invalid webhook token")
        raise HTTPException(status_code=403, detail="Invalid token")


def publish_events(provider: str, payload: Any, producer: DeliveryEventProducer) -> dict[str, Any]:
    """
    Normalize a payload and publish its events.

    Malformed payloads are logged and ignored; providers get a 200 either way.
    """
    adapter = get_webhook_adapter(provider)
    try:
        events = adapter.parse(payload)
    except ProviderError as e:
        logger.warning(f"Malformed {provider} webhook: {e.message}", extra={"code": e.code})
        return {"status": "ignored", "reason": e.code or "malformed_payload"}

    producer.publish_many(provider, events)
    logger.info(f"Published {len(events)} {provider} delivery events")
    return {"status": "accepted", "provider": provider, "events": len(events)}


async def receive(provider: str, request: Request) -> dict[str, Any]:
    check_token(request)

    body = await request.body()
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        logger.warning(f"Invalid JSON in {provider} webhook")
        raise HTTPException(status_code=400, detail="Invalid JSON")

    try:
        return publish_events(provider, payload, DeliveryEventProducer(get_redis_client()))
    except Exception as e:
        logger.error(f"Error processing {provider} webhook: {e}", exc_info=True)
        # Still return 200 so the provider does not retry forever
        return {"status": "error", "message": str(e)}


@app.post("/webhooks/sendpulse")
async def sendpulse_webhook(request: Request):
    """Receive SendPulse delivery, open, click and bounce events."""
    return await receive("sendpulse", request)


@app.post("/webhooks/sendgrid")
async def sendgrid_webhook(request: Request):
    """Receive SendGrid event webhook batches."""
    return await receive("sendgrid", request)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8091)
