"""
Routing of verified PayPal webhook events into the settlement engine.

Every delivery is recorded as a WebhookEvent. A redelivery of an event that was
already processed (or deliberately ignored) is acknowledged without touching
the ledger again; a previously failed one is retried.
"""
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.integrations import paypal
from app.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.schemas.webhooks import (
    CaptureResource,
    OrderResource,
    PayPalWebhookEvent,
    SaleResource,
    SubscriptionResource,
    WebhookCategory,
)
from app.models.purchase import PurchaseStatus
from app.services import ledger
from app.services.settlement import (
    CaptureOutcome,
    settle_order,
    settle_recurring_payment,
    settle_subscription_event,
)

logger = logging.getLogger(__name__)

_DONE = (WebhookEventStatus.PROCESSED, WebhookEventStatus.IGNORED)


def _record(db: Session, event: PayPalWebhookEvent, payload: dict) -> WebhookEvent:
    if event.id:
        existing = db.query(WebhookEvent).filter(WebhookEvent.provider_event_id == event.id).first()
        if existing is not None:
            return existing

    record = WebhookEvent(
        provider_event_id=event.id,
        event_type=event.event_type,
        payload=payload,
        status=WebhookEventStatus.RECEIVED,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # Same event id delivered concurrently
        db.rollback()
        return db.query(WebhookEvent).filter(WebhookEvent.provider_event_id == event.id).one()
    return record


def _handle_order(db: Session, event: PayPalWebhookEvent, gateway) -> None:
    if event.event_type == paypal.PAYMENT_CAPTURE_COMPLETED:
        capture = CaptureResource.model_validate(event.resource)
        if capture.status != paypal.COMPLETED:
            # PENDING (e.g. eCheck review) is still in flight; a later delivery settles it
            logger.info(
                "Capture %s for PayPal order %s is %s; not settling yet",
                capture.id, capture.order_id, capture.status,
            )
            return
        settle_order(db, capture.order_id, CaptureOutcome(status=capture.status, capture_id=capture.id))
        return

    order = OrderResource.model_validate(event.resource)
    purchases = ledger.find_purchases_by_provider_ref(db, order.id)
    if not purchases:
        logger.warning("Approved PayPal order %s matches no purchases; ignoring", order.id)
        return
    if all(p.status == PurchaseStatus.PAID for p in purchases):
        logger.info("Approved PayPal order %s already settled", order.id)
        return

    captured = gateway.capture_order(order.id)
    settle_order(db, order.id, CaptureOutcome.from_order(captured))


def _handle_recurring(db: Session, event: PayPalWebhookEvent, gateway) -> None:
    sale = SaleResource.model_validate(event.resource)
    if not sale.billing_agreement_id:
        logger.info("Sale %s is not tied to a subscription; ignoring", sale.id)
        return
    settle_recurring_payment(
        db,
        sale.billing_agreement_id,
        sale.amount_cents,
        sale.currency,
        sale.id,
        gateway=gateway,
    )


def dispatch(db: Session, event: PayPalWebhookEvent, gateway=paypal) -> None:
    category = event.category
    if category == WebhookCategory.ORDER:
        _handle_order(db, event, gateway)
    elif category == WebhookCategory.SUBSCRIPTION:
        settle_subscription_event(
            db, event.event_type, SubscriptionResource.model_validate(event.resource), gateway=gateway
        )
    elif category == WebhookCategory.RECURRING_PAYMENT:
        _handle_recurring(db, event, gateway)


def process_webhook(db: Session, event: PayPalWebhookEvent, payload: dict, gateway=paypal) -> WebhookEvent:
    """
    Record and apply one verified webhook delivery.

    Processing errors are logged and stored on the WebhookEvent, never raised:
    PayPal gets its acknowledgement either way.
    """
    record = _record(db, event, payload)
    if record.status in _DONE:
        logger.info("Duplicate PayPal webhook %s (%s) already %s", event.id, event.event_type, record.status.value)
        return record

    record_id = record.id
    if event.category == WebhookCategory.IGNORED:
        logger.info("Ignoring PayPal webhook %s (%s)", event.id, event.event_type)
        record.status = WebhookEventStatus.IGNORED
        db.commit()
        return record

    try:
        dispatch(db, event, gateway=gateway)
    except Exception as e:
        db.rollback()
        logger.exception("Failed to process PayPal webhook %s (%s)", event.id, event.event_type)
        record = db.query(WebhookEvent).filter(WebhookEvent.id == record_id).one()
        record.status = WebhookEventStatus.FAILED
        record.error_message = str(e)[:2000]
        db.commit()
        return record

    record = db.query(WebhookEvent).filter(WebhookEvent.id == record_id).one()
    record.status = WebhookEventStatus.PROCESSED
    record.error_message = None
    db.commit()
    logger.info("Processed PayPal webhook %s (%s)", event.id, event.event_type)
    return record
