"""
אימות webhook נכנס מה-SMS gateway.

ה-gateway שולח את הכותרת ``X-Webhook-Secret`` עם כל הודעה נכנסת.

שימוש:
    @router.post("/inbound")
    async def inbound_sms(
        ...,
        _: None = Depends(verify_sms_webhook_secret),
    ):
        ...
"""
import hmac

from fastapi import Header, HTTPException, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


async def verify_sms_webhook_secret(
    x_webhook_secret: str | None = Header(None),
) -> None:
    """
    - SMS_WEBHOOK_SECRET לא מוגדר - מדלג (אזהרה בלוג).
    - כותרת חסרה או לא תואמת - 403.
    """
    expected = settings.SMS_WEBHOOK_SECRET
    if not expected:
        logger.warning("SMS_WEBHOOK_SECRET not configured, inbound webhook is unauthenticated")
        return

    if not x_webhook_secret:
        logger.warning("Inbound webhook without X-Webhook-Secret header")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing webhook secret",
        )

    # השוואה בטוחה מפני timing attacks
    if not hmac.compare_digest(x_webhook_secret, expected):
        logger.warning("Inbound webhook with wrong secret")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid webhook secret",
        )
