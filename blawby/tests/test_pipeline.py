"""
End-to-end: a signed Connect webhook is stored, processed by the job worker,
its outbox event drained, and the queued handler run; and a webhook whose
processor keeps failing runs out of retries. Uses real services against
SQLite; only Redis is mocked.
"""
import hashlib
import hmac
import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from src.config import get_settings
from src.models.client_intake import ClientIntake
from src.models.domain_event import DomainEvent
from src.models.job import Job
from src.models.practice_details import PracticeDetails
from src.models.webhook_event import WebhookEvent
from src.services.event_handlers import build_event_registry
from src.services.stripe_webhooks import enqueue_webhook, verify_and_store_with_secret
from src.workers.job_worker import claim_job, execute_job

SECRET = "whsec_pipeline"
ORG_ID = uuid.UUID("99999999-9999-9999-9999-999999999999")


def _sign(payload: bytes) -> str:
    ts = int(time.time())
    digest = hmac.new(SECRET.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


async def _drain_jobs(registry, limit: int = 10, now=None) -> list[dict]:
    results = []
    for _ in range(limit):
        job = await claim_job("pipeline-worker", now=now)
        if job is None:
            break
        results.append({"task": job.task_identifier, **await execute_job(job, registry, "pipeline-worker")})
    return results


class TestIntakePaymentPipeline:
    async def test_payment_webhook_flows_to_queued_handler(self, session_factory):
        intake_id = uuid.uuid4()
        async with session_factory() as session:
            session.add(ClientIntake(
                id=intake_id, organization_id=ORG_ID, stripe_payment_link_id="plink_p",
                amount=25000, currency="usd", status="pending",
            ))
            session.add(PracticeDetails(
                organization_id=ORG_ID, user_id=uuid.uuid4(), business_email="billing@firm.example",
            ))
            await session.commit()

        body = json.dumps({
            "id": "evt_pipeline_1",
            "type": "payment_intent.succeeded",
            "created": 1700000000,
            "data": {"object": {
                "id": "pi_p", "object": "payment_intent", "payment_link": "plink_p",
                "latest_charge": "ch_p", "metadata": {},
            }},
        }).encode()

        stored = await verify_and_store_with_secret(body, _sign(body), SECRET, source="stripe-connect")
        await enqueue_webhook("stripe-connect", stored)
        # Redelivery while the job is waiting does not add a second job
        again = await verify_and_store_with_secret(body, _sign(body), SECRET, source="stripe-connect")
        await enqueue_webhook("stripe-connect", again)

        results = await _drain_jobs(build_event_registry())

        assert [r["task"] for r in results] == [
            "process-onboarding-webhook",
            "process-outbox-event",
            "process-event-handler",
        ]
        assert all(r["status"] == "completed" for r in results)
        assert results[2]["result"]["handler"] == "notify-intake-payment"

        async with session_factory() as session:
            webhook = (await session.execute(select(WebhookEvent))).scalar_one()
            intake = await session.get(ClientIntake, intake_id)
            events = (await session.execute(select(DomainEvent))).scalars().all()
            jobs = (await session.execute(select(Job))).scalars().all()

        assert webhook.processed is True
        assert intake.status == "succeeded"
        assert [e.event_type for e in events] == ["intake_payment.succeeded"]
        assert events[0].processed is True
        assert jobs == []


class TestWebhookRetryExhaustion:
    async def test_failing_webhook_stops_after_max_retries(self, session_factory, caplog):
        caplog.set_level(logging.WARNING, logger="src.services.event_handlers")
        max_retries = get_settings().webhook_max_retries
        body = json.dumps({
            "id": "evt_pipeline_broken",
            "type": "payment_intent.succeeded",
            "created": 1700000000,
            "data": {"object": {"id": "pi_b", "object": "payment_intent", "payment_link": "plink_b"}},
        }).encode()

        stored = await verify_and_store_with_secret(body, _sign(body), SECRET, source="stripe-connect")
        await enqueue_webhook("stripe-connect", stored)

        registry = build_event_registry()
        base = datetime.now(timezone.utc)
        attempts = []
        processor = AsyncMock(side_effect=RuntimeError("ledger unavailable"))
        with patch("src.services.intake_payments.process_payment_event", processor):
            for attempt in range(max_retries + 1):
                # Each round is past the previous backoff; the drain job runs alongside
                now = base + timedelta(hours=2 * attempt)
                results = await _drain_jobs(registry, now=now)
                attempts.extend(r for r in results if r["task"] == "process-onboarding-webhook")

        assert processor.await_count == max_retries
        assert len(attempts) == max_retries
        assert all(r["status"] == "failed" for r in attempts)
        assert [r["terminal"] for r in attempts] == [False] * (max_retries - 1) + [True]

        async with session_factory() as session:
            webhook = (await session.execute(select(WebhookEvent))).scalar_one()
            failures = (await session.execute(
                select(DomainEvent).order_by(DomainEvent.created_at)
            )).scalars().all()
            jobs = (await session.execute(select(Job))).scalars().all()

        assert webhook.processed is False
        assert webhook.retry_count == max_retries
        assert webhook.error == "ledger unavailable"
        assert [e.event_type for e in failures] == ["webhook.failed"] * max_retries
        assert all(e.processed for e in failures)
        assert sum(e.payload["retries_exhausted"] for e in failures) == 1

        # Only the permanently failed webhook job is left, and it is never claimed again
        assert [j.task_identifier for j in jobs] == ["process-onboarding-webhook"]
        assert jobs[0].attempts == max_retries
        assert await claim_job("pipeline-worker", now=base + timedelta(days=30)) is None

        exhausted = [r for r in caplog.records if "retries exhausted" in r.getMessage()]
        assert len(exhausted) == 1
        assert exhausted[0].levelno == logging.ERROR
        assert exhausted[0].webhook_id == stored.webhook_id
