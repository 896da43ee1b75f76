"""
PayPal webhook receiver.

Verify first, then record and settle synchronously. Anything after verification
is acknowledged with 200 so PayPal stops redelivering; failures are kept on the
WebhookEvent row for investigation.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.database import get_db
from app.integrations import paypal
from app.schemas.webhooks import PayPalWebhookEvent, WebhookResponse
from app.services.webhook_intake import process_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/paypal", response_model=WebhookResponse)
async def paypal_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    headers = {name: request.headers.get(name) for name in paypal.WEBHOOK_HEADERS}
    missing = [name for name, value in headers.items() if not value]
    if missing:
        logger.warning("PayPal webhook rejected, missing headers: %s", ", ".join(missing))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing PayPal transmission headers")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook body")

    try:
        await run_in_threadpool(
            paypal.verify_webhook_signature,
            headers["paypal-transmission-id"],
            headers["paypal-transmission-time"],
            headers["paypal-transmission-sig"],
            headers["paypal-cert-url"],
            headers["paypal-auth-algo"],
            payload,
        )
    except paypal.PayPalError as e:
        logger.warning("PayPal webhook signature verification failed: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook verification failed")

    try:
        event = PayPalWebhookEvent.model_validate(payload)
    except ValidationError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook body")

    try:
        await run_in_threadpool(process_webhook, db, event, payload)
    except Exception:
        logger.exception("Unhandled error recording PayPal webhook %s (%s)", event.id, event.event_type)

    return WebhookResponse(received=True)
