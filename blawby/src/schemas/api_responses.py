"""
API response schemas for the webhook and health endpoints.
"""
from typing import Optional
from pydantic import BaseModel


class WebhookReceivedResponse(BaseModel):
    received: bool = True


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    retrying: int = 0
    failed: int = 0


class QueueHealthResponse(BaseModel):
    status: str
    queues: dict[str, QueueCounts]
    unprocessed_webhooks: int = 0
    unprocessed_events: int = 0
    error: Optional[str] = None
