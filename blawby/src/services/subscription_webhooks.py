"""
Subscription catalog processor - mirrors Stripe product.* and price.* webhooks
into subscription_products / subscription_prices.
Created and updated events upsert the full object; deleted events deactivate.
"""
import logging
from typing import Optional

from sqlalchemy import select

from src.database import async_session_factory
from src.models.subscription_catalog import SubscriptionPrice, SubscriptionProduct
from src.schemas.events import EventType, WEBHOOK_ACTOR_UUID
from src.services.event_publisher import publish_event_tx

logger = logging.getLogger(__name__)


def _product_features(product: dict) -> Optional[list]:
    features = product.get("marketing_features") or product.get("features")
    if not features:
        return None
    return [f.get("name") for f in features if isinstance(f, dict) and f.get("name")]


async def process_subscription_event(event: dict) -> dict:
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type in ("product.created", "product.updated"):
        return await upsert_product(obj)
    if event_type == "product.deleted":
        return await delete_product(obj)
    if event_type in ("price.created", "price.updated"):
        return await upsert_price(obj)
    if event_type == "price.deleted":
        return await delete_price(obj)

    logger.info("Unhandled subscription webhook type: %s", event_type)
    return {"status": "ignored", "reason": f"unhandled type {event_type}"}


async def upsert_product(product: dict) -> dict:
    product_id = product.get("id")
    async with async_session_factory() as db:
        result = await db.execute(
            select(SubscriptionProduct).where(SubscriptionProduct.stripe_product_id == product_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = SubscriptionProduct(stripe_product_id=product_id)
            db.add(record)

        record.name = product.get("name") or product_id
        record.description = product.get("description")
        record.active = bool(product.get("active", True))
        record.deleted = False
        record.features = _product_features(product)
        record.product_metadata = product.get("metadata") or None

        await publish_event_tx(
            db,
            EventType.SUBSCRIPTION_PRODUCT_SYNCED,
            actor_id=WEBHOOK_ACTOR_UUID,
            actor_type="webhook",
            payload={"stripe_product_id": product_id, "name": record.name, "active": record.active},
        )
        await db.commit()

    logger.info("Subscription product synced: %s active=%s", product_id, record.active)
    return {"status": "synced", "stripe_product_id": product_id}


async def delete_product(product: dict) -> dict:
    product_id = product.get("id")
    async with async_session_factory() as db:
        result = await db.execute(
            select(SubscriptionProduct).where(SubscriptionProduct.stripe_product_id == product_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            logger.info("Deleted product %s was never synced", product_id)
            return {"status": "skipped", "reason": "product not found"}

        record.active = False
        record.deleted = True
        await publish_event_tx(
            db,
            EventType.SUBSCRIPTION_PRODUCT_DELETED,
            actor_id=WEBHOOK_ACTOR_UUID,
            actor_type="webhook",
            payload={"stripe_product_id": product_id},
        )
        await db.commit()

    logger.info("Subscription product deleted: %s", product_id)
    return {"status": "deleted", "stripe_product_id": product_id}


async def upsert_price(price: dict) -> dict:
    price_id = price.get("id")
    product = price.get("product")
    product_id = product.get("id") if isinstance(product, dict) else product
    recurring = price.get("recurring") or {}

    async with async_session_factory() as db:
        result = await db.execute(
            select(SubscriptionPrice).where(SubscriptionPrice.stripe_price_id == price_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = SubscriptionPrice(stripe_price_id=price_id)
            db.add(record)

        record.stripe_product_id = product_id
        record.unit_amount = price.get("unit_amount")
        record.currency = (price.get("currency") or "usd").lower()
        record.interval = recurring.get("interval")
        record.interval_count = recurring.get("interval_count")
        record.usage_type = recurring.get("usage_type")
        record.active = bool(price.get("active", True))
        record.deleted = False
        record.price_metadata = price.get("metadata") or None

        await publish_event_tx(
            db,
            EventType.SUBSCRIPTION_PRICE_SYNCED,
            actor_id=WEBHOOK_ACTOR_UUID,
            actor_type="webhook",
            payload={
                "stripe_price_id": price_id,
                "stripe_product_id": product_id,
                "unit_amount": record.unit_amount,
                "currency": record.currency,
                "interval": record.interval,
                "active": record.active,
            },
        )
        await db.commit()

    logger.info("Subscription price synced: %s product=%s", price_id, product_id)
    return {"status": "synced", "stripe_price_id": price_id}


async def delete_price(price: dict) -> dict:
    price_id = price.get("id")
    async with async_session_factory() as db:
        result = await db.execute(
            select(SubscriptionPrice).where(SubscriptionPrice.stripe_price_id == price_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            logger.info("Deleted price %s was never synced", price_id)
            return {"status": "skipped", "reason": "price not found"}

        record.active = False
        record.deleted = True
        await publish_event_tx(
            db,
            EventType.SUBSCRIPTION_PRICE_DELETED,
            actor_id=WEBHOOK_ACTOR_UUID,
            actor_type="webhook",
            payload={"stripe_price_id": price_id, "stripe_product_id": record.stripe_product_id},
        )
        await db.commit()

    logger.info("Subscription price deleted: %s", price_id)
    return {"status": "deleted", "stripe_price_id": price_id}
