"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.agent import router as agent_router
from app.api.routes.messages import router as messages_router
from app.api.webhooks.sms import router as sms_webhook_router

router = APIRouter()

router.include_router(agent_router, prefix="/agent", tags=["Agent"])
router.include_router(messages_router, prefix="/messages", tags=["Messages"])
router.include_router(sms_webhook_router, prefix="/webhooks/sms", tags=["Webhooks"])
