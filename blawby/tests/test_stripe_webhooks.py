"""
Tests for src/services/stripe_webhooks.py - signature verification,
idempotent storage and enqueueing.
Signatures are computed the way Stripe does (HMAC-SHA256 over "t.payload").
"""
import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from src.models.webhook_event import WebhookEvent
from src.services.stripe_webhooks import (
    SignatureVerificationError,
    StoredWebhook,
    UnknownWebhookSourceError,
    WebhookSecretMissingError,
    enqueue_webhook,
    get_webhook_source,
    verify_and_store,
    verify_and_store_with_secret,
)

SECRET = "whsec_test_secret"


def _sign(payload: bytes, secret: str = SECRET, timestamp: int = None) -> str:
    ts = int(timestamp or time.time())
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def _event_body(event_id="evt_1", event_type="product.created") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1700000000,
        "data": {"object": {"id": "prod_1", "object": "product", "name": "Pro"}},
    }).encode()


def _mock_settings(**overrides):
    settings = MagicMock()
    settings.stripe_webhook_secret = SECRET
    settings.stripe_connect_webhook_secret = "whsec_connect"
    settings.webhook_max_retries = 5
    for k, v in overrides.items():
        setattr(settings, k, v)
    return settings


async def _rows(session_factory) -> list[WebhookEvent]:
    async with session_factory() as session:
        return list((await session.execute(select(WebhookEvent))).scalars().all())


class TestWebhookSources:
    def test_known_sources(self):
        assert get_webhook_source("stripe").task_identifier == "process-stripe-webhook"
        assert get_webhook_source("stripe-connect").task_identifier == "process-onboarding-webhook"

    def test_unknown_source(self):
        with pytest.raises(UnknownWebhookSourceError):
            get_webhook_source("paypal")


class TestVerifyAndStoreWithSecret:
    async def test_valid_delivery_is_stored(self, session_factory):
        body = _event_body()
        stored = await verify_and_store_with_secret(
            body, _sign(body), SECRET,
            source="stripe",
            headers={"User-Agent": "Stripe/1.0", "Stripe-Signature": "t=1,v1=x"},
            url="http://test/webhooks/stripe",
        )

        assert stored.is_new is True
        assert stored.already_processed is False
        assert stored.event_id == "evt_1"
        assert stored.event_type == "product.created"

        rows = await _rows(session_factory)
        assert len(rows) == 1
        assert rows[0].provider_event_id == "evt_1"
        assert rows[0].payload["data"]["object"]["name"] == "Pro"
        assert rows[0].processed is False
        assert rows[0].url == "http://test/webhooks/stripe"
        # Signature headers are never recorded
        assert rows[0].headers == {"user-agent": "Stripe/1.0"}

    async def test_redelivery_returns_existing_row(self, session_factory):
        body = _event_body()
        first = await verify_and_store_with_secret(body, _sign(body), SECRET)
        second = await verify_and_store_with_secret(body, _sign(body), SECRET)

        assert second.is_new is False
        assert second.webhook_id == first.webhook_id
        assert second.already_processed is False
        assert len(await _rows(session_factory)) == 1

    async def test_redelivery_of_processed_event(self, session_factory):
        body = _event_body()
        await verify_and_store_with_secret(body, _sign(body), SECRET)
        async with session_factory() as session:
            row = (await session.execute(select(WebhookEvent))).scalar_one()
            row.processed = True
            await session.commit()

        stored = await verify_and_store_with_secret(body, _sign(body), SECRET)
        assert stored.already_processed is True
        assert stored.retries_exhausted is False

    async def test_redelivery_after_retries_exhausted(self, session_factory):
        body = _event_body()
        await verify_and_store_with_secret(body, _sign(body), SECRET)
        async with session_factory() as session:
            row = (await session.execute(select(WebhookEvent))).scalar_one()
            row.retry_count = row.max_retries
            await session.commit()

        stored = await verify_and_store_with_secret(body, _sign(body), SECRET)
        assert stored.retries_exhausted is True

    async def test_wrong_secret_rejected_and_nothing_stored(self, session_factory):
        body = _event_body()
        with pytest.raises(SignatureVerificationError):
            await verify_and_store_with_secret(body, _sign(body, secret="whsec_other"), SECRET)
        assert await _rows(session_factory) == []

    async def test_tampered_body_rejected(self, session_factory):
        body = _event_body()
        signature = _sign(body)
        with pytest.raises(SignatureVerificationError):
            await verify_and_store_with_secret(_event_body(event_type="price.created"), signature, SECRET)

    async def test_stale_timestamp_rejected(self, session_factory):
        body = _event_body()
        with pytest.raises(SignatureVerificationError):
            await verify_and_store_with_secret(body, _sign(body, timestamp=int(time.time()) - 3600), SECRET)

    async def test_missing_signature_rejected(self, session_factory):
        with pytest.raises(SignatureVerificationError):
            await verify_and_store_with_secret(_event_body(), "", SECRET)

    async def test_signed_non_event_rejected(self, session_factory):
        body = json.dumps({"hello": "world"}).encode()
        with pytest.raises(SignatureVerificationError):
            await verify_and_store_with_secret(body, _sign(body), SECRET)


class TestVerifyAndStore:
    async def test_uses_source_secret(self, session_factory):
        body = _event_body(event_type="account.updated")
        with patch("src.services.stripe_webhooks.get_settings", return_value=_mock_settings()):
            stored = await verify_and_store("stripe-connect", body, _sign(body, secret="whsec_connect"))

        assert stored.is_new is True
        assert (await _rows(session_factory))[0].source == "stripe-connect"

    async def test_missing_secret(self, session_factory):
        body = _event_body()
        with patch(
            "src.services.stripe_webhooks.get_settings",
            return_value=_mock_settings(stripe_webhook_secret=""),
        ):
            with pytest.raises(WebhookSecretMissingError):
                await verify_and_store("stripe", body, _sign(body))

    async def test_unknown_source(self):
        with pytest.raises(UnknownWebhookSourceError):
            await verify_and_store("github", b"{}", "t=1,v1=x")


class TestEnqueueWebhook:
    async def test_job_keyed_by_event_id(self):
        stored = StoredWebhook(
            event={"id": "evt_9", "type": "payment_intent.succeeded"},
            webhook_id="11111111-1111-1111-1111-111111111111",
        )
        with (
            patch("src.services.stripe_webhooks.add_job", new_callable=AsyncMock) as mock_add,
            patch("src.services.stripe_webhooks.get_settings", return_value=_mock_settings()),
        ):
            mock_add.return_value = "job-1"
            job_id = await enqueue_webhook("stripe-connect", stored)

        assert job_id == "job-1"
        args, kwargs = mock_add.call_args
        assert args[0] == "process-onboarding-webhook"
        assert args[1] == {
            "webhook_id": "11111111-1111-1111-1111-111111111111",
            "event_id": "evt_9",
            "event_type": "payment_intent.succeeded",
        }
        assert kwargs["job_key"] == "evt_9"
        assert kwargs["max_attempts"] == 5
