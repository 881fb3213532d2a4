"""
API router - aggregates the webhook and health routes.
"""
from fastapi import APIRouter
from src.api.webhooks import router as webhooks_router
from src.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(health_router)
