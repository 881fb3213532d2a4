"""
Tests for src/workers/webhook_recovery.py - re-enqueueing stored webhooks
that never finished processing.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from src.services.job_queue import EnqueuedJob, QueueUnavailableError, add_job
from src.services.webhook_store import create_webhook_event
from src.workers.webhook_recovery import run_webhook_recovery, sweep_unprocessed_webhooks


async def _store(session_factory, event_id, *, source="stripe", age_minutes=60, **fields):
    async with session_factory() as session:
        webhook = await create_webhook_event(
            session,
            provider_event_id=event_id,
            source=source,
            event_type="payment_intent.succeeded",
            payload={"id": event_id, "type": "payment_intent.succeeded"},
        )
        webhook.received_at = datetime.now(timezone.utc) - timedelta(minutes=age_minutes)
        for key, value in fields.items():
            setattr(webhook, key, value)
        await session.commit()
        return str(webhook.id)


class TestSweepUnprocessedWebhooks:
    async def test_requeues_stale_pending_webhooks(self, session_factory):
        stale_id = await _store(session_factory, "evt_stale", retry_count=2)
        await _store(session_factory, "evt_fresh", age_minutes=1)
        await _store(session_factory, "evt_done", processed=True)
        await _store(session_factory, "evt_exhausted", retry_count=5)

        with patch("src.services.job_queue.enqueue_job", new_callable=AsyncMock) as mock_add:
            mock_add.return_value = EnqueuedJob("job-1", created=True)
            requeued = await sweep_unprocessed_webhooks()

        assert requeued == 1
        args, kwargs = mock_add.call_args
        assert args[0] == "process-stripe-webhook"
        assert args[1] == {
            "webhook_id": stale_id,
            "event_id": "evt_stale",
            "event_type": "payment_intent.succeeded",
        }
        assert kwargs["job_key"] == "evt_stale"
        # Only the remaining retry budget
        assert kwargs["max_attempts"] == 3

    async def test_connect_source_uses_onboarding_task(self, session_factory):
        await _store(session_factory, "evt_connect", source="stripe-connect")

        with patch("src.services.job_queue.enqueue_job", new_callable=AsyncMock) as mock_add:
            await sweep_unprocessed_webhooks()

        assert mock_add.call_args[0][0] == "process-onboarding-webhook"

    async def test_live_job_is_not_counted_again(self, session_factory):
        await _store(session_factory, "evt_backoff")

        first = await sweep_unprocessed_webhooks()
        second = await sweep_unprocessed_webhooks()

        assert (first, second) == (1, 0)

    async def test_existing_job_in_backoff_is_not_counted(self, session_factory):
        await _store(session_factory, "evt_retrying")
        await add_job("process-stripe-webhook", {}, job_key="evt_retrying", delay_seconds=120)

        assert await sweep_unprocessed_webhooks() == 0

    async def test_unknown_source_skipped(self, session_factory):
        await _store(session_factory, "evt_legacy", source="legacy")

        with patch("src.services.job_queue.enqueue_job", new_callable=AsyncMock) as mock_add:
            assert await sweep_unprocessed_webhooks() == 0
        mock_add.assert_not_awaited()

    async def test_stops_when_queue_unavailable(self, session_factory):
        await _store(session_factory, "evt_a", age_minutes=90)
        await _store(session_factory, "evt_b", age_minutes=60)

        with patch(
            "src.services.job_queue.enqueue_job",
            new_callable=AsyncMock,
            side_effect=QueueUnavailableError("down"),
        ) as mock_add:
            assert await sweep_unprocessed_webhooks() == 0
        assert mock_add.await_count == 1


class TestRunWebhookRecovery:
    async def test_loop_survives_sweep_errors(self):
        stop = asyncio.Event()

        async def failing_sweep():
            stop.set()
            raise RuntimeError("db down")

        with patch("src.workers.webhook_recovery.sweep_unprocessed_webhooks", side_effect=failing_sweep):
            await asyncio.wait_for(run_webhook_recovery(stop), timeout=5)

        assert stop.is_set()
