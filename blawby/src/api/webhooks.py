"""
Inbound webhook endpoint - verify, store, enqueue, acknowledge.

POST /webhooks/{source} returns 200 {"received": true} once the delivery is
durably stored, before it is processed. Processing runs on the job workers.

Responses:
- 200: stored (or a duplicate of an already stored/processed event)
- 400: missing or invalid signature (nothing stored)
- 404: unknown source
- 500: source has no signing secret configured
- 503: stored, but the job could not be enqueued (the recovery sweep
       re-enqueues it; the provider also retries on 5xx)
"""
import logging
from fastapi import APIRouter, HTTPException, Request

from src.schemas.api_responses import WebhookReceivedResponse
from src.services.job_queue import QueueUnavailableError
from src.services.stripe_webhooks import (
    SignatureVerificationError,
    UnknownWebhookSourceError,
    WebhookSecretMissingError,
    enqueue_webhook,
    verify_and_store,
)

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/{source}", response_model=WebhookReceivedResponse)
async def receive_webhook(source: str, request: Request):
    """
    Provider webhook receiver. No auth - uses provider signature verification.
    """
    raw_body = await request.body()
    signature = request.headers.get("stripe-signature", "")

    if not signature:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        stored = await verify_and_store(
            source,
            raw_body,
            signature,
            headers=dict(request.headers),
            url=str(request.url),
        )
    except UnknownWebhookSourceError:
        raise HTTPException(status_code=404, detail=f"Unknown webhook source: {source}")
    except SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed: source=%s error=%s", source, str(e))
        raise HTTPException(status_code=400, detail="Invalid webhook signature")
    except WebhookSecretMissingError:
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    if stored.already_processed:
        return WebhookReceivedResponse(received=True)

    if stored.retries_exhausted:
        logger.warning(
            "Webhook redelivered after exhausting retries, not re-enqueued: event=%s",
            stored.event_id,
        )
        return WebhookReceivedResponse(received=True)

    try:
        await enqueue_webhook(source, stored)
    except QueueUnavailableError as e:
        logger.error(
            "Webhook stored but not enqueued: event=%s webhook=%s error=%s",
            stored.event_id, stored.webhook_id[:8], str(e),
        )
        raise HTTPException(status_code=503, detail="Webhook stored, processing queue unavailable")

    return WebhookReceivedResponse(received=True)
