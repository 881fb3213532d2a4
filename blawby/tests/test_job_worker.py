"""
Tests for src/workers/job_worker.py - claiming, completion, backoff retries,
terminal failure and the consumer loop.
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from src.models.job import Job
from src.services.job_queue import add_job
from src.utils.logging import get_correlation_id
from src.workers.job_worker import (
    HEARTBEAT_TTL_SECONDS,
    TaskContext,
    _heartbeat,
    claim_job,
    complete_job,
    compute_backoff_seconds,
    execute_job,
    fail_job,
    get_task_list,
    make_worker_id,
    run_job_consumer,
)


def _later(hours: int = 2) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


async def _job_rows(session_factory) -> list[Job]:
    async with session_factory() as session:
        return list((await session.execute(select(Job))).scalars().all())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestTaskList:
    def test_registers_all_task_identifiers(self):
        assert set(get_task_list()) == {
            "process-stripe-webhook",
            "process-onboarding-webhook",
            "process-event-handler",
            "process-outbox-event",
        }

    def test_worker_id_includes_index(self):
        assert make_worker_id(3).endswith(":3")


class TestBackoff:
    def test_exponential(self):
        assert compute_backoff_seconds(1) == 30
        assert compute_backoff_seconds(2) == 120
        assert compute_backoff_seconds(3) == 480

    def test_capped(self):
        assert compute_backoff_seconds(10) == 3600


# ---------------------------------------------------------------------------
# claim_job
# ---------------------------------------------------------------------------

class TestClaimJob:
    async def test_claims_and_counts_attempt(self, session_factory):
        job_id = await add_job("process-outbox-event", {"a": 1})

        job = await claim_job("worker-1")

        assert str(job.id) == job_id
        assert job.attempts == 1
        assert job.locked_by == "worker-1"
        assert job.payload == {"a": 1}

    async def test_locked_job_not_claimed_twice(self, session_factory):
        await add_job("process-outbox-event", {})

        assert await claim_job("worker-1") is not None
        assert await claim_job("worker-2") is None

    async def test_highest_priority_first(self, session_factory):
        await add_job("process-outbox-event", {"n": "low"}, priority=0)
        await add_job("process-event-handler", {"n": "high"}, priority=10)

        job = await claim_job("worker-1")
        assert job.payload == {"n": "high"}

    async def test_delayed_job_waits(self, session_factory):
        await add_job("process-outbox-event", {}, delay_seconds=600)

        assert await claim_job("worker-1") is None
        assert await claim_job("worker-1", now=_later()) is not None

    async def test_expired_lock_is_reclaimed(self, session_factory):
        await add_job("process-outbox-event", {})
        first = await claim_job("worker-1")

        second = await claim_job("worker-2", now=_later())

        assert second.id == first.id
        assert second.attempts == 2
        assert second.locked_by == "worker-2"

    async def test_expired_final_attempt_is_released_as_failed(self, session_factory):
        await add_job("process-outbox-event", {}, max_attempts=1)
        await claim_job("worker-1")

        assert await claim_job("worker-2", now=_later()) is None

        rows = await _job_rows(session_factory)
        assert rows[0].locked_at is None
        assert "Lock expired" in rows[0].last_error
        assert rows[0].permanently_failed is True


# ---------------------------------------------------------------------------
# execute_job / fail_job
# ---------------------------------------------------------------------------

class TestExecuteJob:
    async def test_success_deletes_job(self, session_factory):
        seen = {}

        async def _capture(payload, ctx):
            seen["cid"] = get_correlation_id()
            return {"ok": True}

        task = AsyncMock(side_effect=_capture)
        registry = MagicMock()
        await add_job("process-outbox-event", {"x": 1})
        job = await claim_job("worker-1")

        with patch("src.workers.job_worker.get_task_list", return_value={"process-outbox-event": task}):
            result = await execute_job(job, registry, "worker-1")

        assert result == {"status": "completed", "result": {"ok": True}}
        assert await _job_rows(session_factory) == []

        payload, ctx = task.call_args[0]
        assert payload == {"x": 1}
        assert isinstance(ctx, TaskContext)
        assert ctx.registry is registry
        assert ctx.job.id == job.id
        assert seen["cid"] == job.id.hex
        assert get_correlation_id() != job.id.hex

    async def test_failure_schedules_retry_with_backoff(self, session_factory):
        task = AsyncMock(side_effect=RuntimeError("processor down"))
        await add_job("process-outbox-event", {}, max_attempts=3)
        job = await claim_job("worker-1")

        with patch("src.workers.job_worker.get_task_list", return_value={"process-outbox-event": task}):
            result = await execute_job(job, MagicMock(), "worker-1")

        assert result["status"] == "failed"
        assert result["terminal"] is False
        assert result["backoff_seconds"] == 30

        rows = await _job_rows(session_factory)
        assert rows[0].locked_at is None
        assert rows[0].last_error == "processor down"
        # Not due again until the backoff passes
        assert await claim_job("worker-1") is None

    async def test_exhausted_attempts_fail_permanently(self, session_factory):
        task = AsyncMock(side_effect=RuntimeError("still broken"))
        await add_job("process-outbox-event", {}, max_attempts=2)

        outcomes = []
        with patch("src.workers.job_worker.get_task_list", return_value={"process-outbox-event": task}):
            for hours in (2, 4):
                job = await claim_job("worker-1", now=_later(hours))
                outcomes.append(await execute_job(job, MagicMock(), "worker-1"))

        assert [o["terminal"] for o in outcomes] == [False, True]
        assert task.await_count == 2

        rows = await _job_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].attempts == 2
        assert rows[0].permanently_failed is True
        assert await claim_job("worker-1", now=_later(48)) is None

    async def test_unknown_task_fails_job(self, session_factory):
        await add_job("process-something-else", {})
        job = await claim_job("worker-1")

        result = await execute_job(job, MagicMock(), "worker-1")

        assert result["status"] == "failed"
        assert "Unknown task identifier" in result["error"]

    async def test_fail_job_missing_row_is_lost_lock(self, session_factory):
        job = MagicMock()
        job.id = uuid.uuid4()
        outcome = await fail_job(job, RuntimeError("gone"))
        assert outcome == {"terminal": False, "backoff_seconds": None, "lost_lock": True}


# ---------------------------------------------------------------------------
# lock ownership and reruns
# ---------------------------------------------------------------------------

class TestLockOwnership:
    async def _stolen(self):
        """Worker A's claim, after worker B reclaimed the expired lock."""
        await add_job("process-outbox-event", {})
        t0 = datetime.now(timezone.utc)
        first = await claim_job("worker-a", now=t0)
        second = await claim_job("worker-b", now=t0 + timedelta(seconds=400))
        assert second.id == first.id
        return t0, first

    async def test_stale_fail_leaves_new_owner_alone(self, session_factory):
        t0, stale = await self._stolen()

        outcome = await fail_job(stale, RuntimeError("late failure"))

        assert outcome["lost_lock"] is True
        assert outcome["terminal"] is False
        rows = await _job_rows(session_factory)
        assert rows[0].locked_by == "worker-b"
        assert rows[0].last_error is None
        assert await claim_job("worker-c", now=t0 + timedelta(seconds=500)) is None

    async def test_stale_complete_does_not_delete(self, session_factory):
        _, stale = await self._stolen()

        assert await complete_job(stale) is False

        rows = await _job_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].locked_by == "worker-b"

    async def test_stale_execution_reports_lost_lock(self, session_factory):
        _, stale = await self._stolen()
        task = AsyncMock(return_value={"ok": True})

        with patch("src.workers.job_worker.get_task_list", return_value={"process-outbox-event": task}):
            result = await execute_job(stale, MagicMock(), "worker-a")

        assert result["status"] == "lost_lock"
        assert len(await _job_rows(session_factory)) == 1

    async def test_complete_deletes_owned_job(self, session_factory):
        await add_job("process-outbox-event", {}, job_key="outbox-drain")
        job = await claim_job("worker-1")

        assert await complete_job(job) is True
        assert await _job_rows(session_factory) == []

    async def test_rerun_requested_while_running_rearms_job(self, session_factory):
        job_id = await add_job("process-outbox-event", {}, job_key="outbox-drain")
        job = await claim_job("worker-1")

        again = await add_job("process-outbox-event", {}, job_key="outbox-drain", rerun_if_running=True)
        assert again == job_id

        assert await complete_job(job) is True

        rows = await _job_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].locked_at is None
        assert rows[0].attempts == 0
        rerun = await claim_job("worker-2")
        assert str(rerun.id) == job_id
        assert await complete_job(rerun) is True
        assert await _job_rows(session_factory) == []

    async def test_plain_duplicate_while_running_does_not_rerun(self, session_factory):
        await add_job("process-outbox-event", {}, job_key="outbox-drain")
        job = await claim_job("worker-1")

        await add_job("process-outbox-event", {}, job_key="outbox-drain")

        assert await complete_job(job) is True
        assert await _job_rows(session_factory) == []


# ---------------------------------------------------------------------------
# consumer loop
# ---------------------------------------------------------------------------

class TestHeartbeat:
    async def test_writes_key_with_ttl(self, mock_redis):
        await _heartbeat("host:1:0")

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "blawby:worker_health:host:1:0"
        assert kwargs["ex"] == HEARTBEAT_TTL_SECONDS

    async def test_swallows_redis_errors(self, mock_redis):
        mock_redis.set.side_effect = ConnectionError("down")
        await _heartbeat("host:1:0")


class TestRunJobConsumer:
    async def test_runs_jobs_until_stopped(self, session_factory):
        stop = asyncio.Event()
        seen = []

        async def task(payload, ctx):
            seen.append(payload["n"])
            if len(seen) == 2:
                stop.set()
            return None

        await add_job("process-outbox-event", {"n": 1}, priority=5)
        await add_job("process-outbox-event", {"n": 2})

        with patch("src.workers.job_worker.get_task_list", return_value={"process-outbox-event": task}):
            await asyncio.wait_for(run_job_consumer(MagicMock(), "worker-1", stop), timeout=5)

        assert seen == [1, 2]
        assert await _job_rows(session_factory) == []

    async def test_claim_errors_do_not_kill_loop(self):
        stop = asyncio.Event()
        calls = {"n": 0}

        async def flaky_claim(worker_id):
            calls["n"] += 1
            if calls["n"] >= 2:
                stop.set()
            raise RuntimeError("db hiccup")

        with (
            patch("src.workers.job_worker.claim_job", side_effect=flaky_claim),
            patch("src.workers.job_worker._wait_for_work", new_callable=AsyncMock),
        ):
            await asyncio.wait_for(run_job_consumer(MagicMock(), "worker-1", stop), timeout=5)

        assert calls["n"] == 2

