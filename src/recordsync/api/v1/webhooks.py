"""Inbound webhook endpoint.

POST /webhooks/{source} accepts a single event object or a list of events
and always answers 200 so senders do not retry deliveries we have already
seen or cannot process. De-duplication, auditing and dispatch happen in the
WebhookProcessor held on app.state.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import APIRouter, Request

from src.recordsync.config import get_settings

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

WEBHOOK_TOKEN_HEADER = "X-Webhook-Token"


@router.post("/{source}")
async def receive_webhook(source: str, request: Request) -> dict:
    """Receive webhook deliveries from an external system.

    Returns 200 always; processing errors are audited, not surfaced.
    Validation is done via a shared token when WEBHOOK_TOKEN is configured.
    """
    try:
        payload = await request.json()
    except Exception:
        logger.warning("webhook.invalid_json", source=source)
        return {"received": True}

    if not isinstance(payload, (dict, list)):
        logger.warning("webhook.unexpected_payload", source=source)
        return {"received": True}

    webhook_token = get_settings().WEBHOOK_TOKEN
    presented = request.headers.get(WEBHOOK_TOKEN_HEADER, "")
    if webhook_token and not hmac.compare_digest(presented.encode(), webhook_token.encode()):
        logger.warning("webhook.invalid_token", source=source)
        return {"received": True}

    processor = getattr(request.app.state, "webhook_processor", None)
    if processor is None:
        logger.warning("webhook.processor_unavailable", source=source)
        return {"received": True}

    events = payload if isinstance(payload, list) else [payload]
    events = [e for e in events if isinstance(e, dict)]
    try:
        results = await processor.process_batch(source, events)
    except Exception:
        logger.error("webhook.processing_error", source=source, exc_info=True)
        return {"received": True}

    return {
        "received": True,
        "events": len(results),
        "duplicates": sum(1 for r in results if r.duplicate),
    }
