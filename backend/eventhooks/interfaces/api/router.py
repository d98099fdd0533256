from fastapi import APIRouter

from eventhooks.interfaces.api.health import router as health_router
from eventhooks.interfaces.api.webhooks import router as webhooks_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(webhooks_router)
