"""
Replay stored webhooks that exhausted their retry budget.

Resets retry_count/error on each webhook_events row and enqueues a fresh
processing job for its source. Processed webhooks are skipped unless
--force is given (processors are idempotent, so a forced replay is safe).

Usage:
    python scripts/requeue_webhook.py evt_123 evt_456
    python scripts/requeue_webhook.py --exhausted --limit 20
    python scripts/requeue_webhook.py --exhausted --dry-run
"""
import argparse
import asyncio
import logging
import sys

from sqlalchemy import select, and_

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def _exhausted_event_ids(limit: int) -> list[str]:
    from src.database import async_session_factory
    from src.models.webhook_event import WebhookEvent

    async with async_session_factory() as db:
        result = await db.execute(
            select(WebhookEvent.provider_event_id)
            .where(
                and_(
                    WebhookEvent.processed.is_(False),
                    WebhookEvent.retry_count >= WebhookEvent.max_retries,
                )
            )
            .order_by(WebhookEvent.received_at)
            .limit(limit)
        )
        return [row[0] for row in result.all()]


async def requeue(event_ids: list[str], force: bool = False, dry_run: bool = False) -> int:
    from src.database import async_session_factory
    from src.services.stripe_webhooks import StoredWebhook, enqueue_webhook
    from src.services.webhook_store import find_by_provider_event_id, reset_webhook_for_replay

    requeued = 0
    for event_id in event_ids:
        async with async_session_factory() as db:
            webhook = await find_by_provider_event_id(db, event_id)
            if webhook is None:
                logger.warning("  %s: not found", event_id)
                continue
            if webhook.processed and not force:
                logger.info("  %s: already processed (use --force to replay)", event_id)
                continue
            if dry_run:
                logger.info(
                    "  [DRY RUN] Would requeue %s (%s, retries=%d)",
                    event_id, webhook.event_type, webhook.retry_count or 0,
                )
                continue

            await reset_webhook_for_replay(db, webhook)
            await db.commit()
            source = webhook.source
            stored = StoredWebhook(event=webhook.payload, webhook_id=str(webhook.id))

        job_id = await enqueue_webhook(source, stored)
        requeued += 1
        logger.info("  %s: requeued as job %s", event_id, job_id[:8])

    return requeued


async def run(event_ids: list[str], exhausted: bool, limit: int, force: bool, dry_run: bool):
    if exhausted:
        event_ids = list(event_ids) + await _exhausted_event_ids(limit)
    if not event_ids:
        logger.info("Nothing to requeue")
        return

    logger.info("Requeueing %d webhooks%s", len(event_ids), " [DRY RUN]" if dry_run else "")
    count = await requeue(event_ids, force=force, dry_run=dry_run)
    logger.info("Requeue complete: %d webhooks", count)


def main():
    parser = argparse.ArgumentParser(description="Replay stored Stripe webhooks")
    parser.add_argument("event_ids", nargs="*", help="Stripe event ids (evt_...)")
    parser.add_argument(
        "--exhausted", action="store_true",
        help="Also requeue every unprocessed webhook that ran out of retries",
    )
    parser.add_argument("--limit", type=int, default=100, help="Max webhooks picked by --exhausted")
    parser.add_argument("--force", action="store_true", help="Replay processed webhooks too")
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Show what would be requeued without changing anything",
    )
    args = parser.parse_args()

    if not args.event_ids and not args.exhausted:
        parser.print_usage()
        sys.exit(2)

    asyncio.run(run(args.event_ids, args.exhausted, args.limit, args.force, args.dry_run))


if __name__ == "__main__":
    main()
