"""
API Router - JSON Endpoints
"""
from datetime import datetime

from fastapi import APIRouter

from backoffice.api.webhooks import webhook_router
from backoffice.api.returns import returns_router

api_router = APIRouter(tags=["API"])

api_router.include_router(webhook_router)
api_router.include_router(returns_router)


@api_router.get("/status")
async def api_status():
    return {"status": "ok", "version": "1.0.0", "timestamp": datetime.now().isoformat()}
