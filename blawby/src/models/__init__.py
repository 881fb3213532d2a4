"""
Database models - import all models here so Alembic can discover them.
"""
from src.models.webhook_event import WebhookEvent
from src.models.job import Job
from src.models.domain_event import DomainEvent
from src.models.connected_account import ConnectedAccount
from src.models.client_intake import ClientIntake
from src.models.subscription_catalog import SubscriptionProduct, SubscriptionPrice
from src.models.practice_details import PracticeDetails

__all__ = [
    "WebhookEvent",
    "Job",
    "DomainEvent",
    "ConnectedAccount",
    "ClientIntake",
    "SubscriptionProduct",
    "SubscriptionPrice",
    "PracticeDetails",
]
