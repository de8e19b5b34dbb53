"""Webhook service — gateway callbacks, processed exactly once.

Responsible for:
- Verifying the Stripe-Signature header over the raw body
- Claiming each (event id, entity id) pair in webhook_events before any
  side effect, so gateway retries are acknowledged without re-applying
- Dispatching to event-specific handlers that update order payment state
- Purging claims older than the retention window

A handler failure is recorded on the claim and logged, but the callback is
still acknowledged; retrying would only replay the same failure.
"""

import logging
from datetime import datetime, timedelta, timezone

import stripe
from flask import current_app
from sqlalchemy.exc import IntegrityError

from marketplace.extensions import db
from marketplace.models.audit import AuditEvent
from marketplace.models.order import Order
from marketplace.models.webhook_event import WebhookEvent
from marketplace.services import order_service

logger = logging.getLogger(__name__)


def verify_webhook_signature(payload, sig_header):
    """Verify the Stripe webhook signature and construct the event.

    Returns the verified Stripe event object.
    Raises stripe.SignatureVerificationError on invalid signature.
    """
    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)


# ──────────────────────────────────────────────
# Replay guard
# ──────────────────────────────────────────────

def process_if_new(event_id, entity_id, event_type, handler):
    """Run handler() at most once per (event_id, entity_id).

    handler() returns the affected order id, or None if the event didn't
    apply to any order.

    Returns:
        (processed, order_id). processed is False for a replay, in which
        case order_id is the one recorded by the first delivery.
    """
    claim = WebhookEvent(
        event_id=event_id,
        entity_id=entity_id,
        event_type=event_type,
    )
    db.session.add(claim)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = WebhookEvent.query.filter_by(
            event_id=event_id, entity_id=entity_id
        ).first()
        logger.info(f"Duplicate webhook event {event_id} ({entity_id}), skipping")
        return False, existing.order_id if existing else None

    claim_id = claim.id
    try:
        order_id = handler()
        claim = db.session.get(WebhookEvent, claim_id)
        claim.order_id = order_id
        claim.outcome = "processed" if order_id else "ignored"
        if order_id:
            db.session.add(
                AuditEvent(
                    order_id=order_id,
                    action="webhook.processed",
                    metadata_={"event_id": event_id, "event_type": event_type},
                )
            )
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(
            f"Error handling webhook {event_type} {event_id}: {e}", exc_info=True
        )
        claim = db.session.get(WebhookEvent, claim_id)
        claim.outcome = "failed"
        claim.error = str(e)[:2000]
        db.session.commit()
        return True, None

    logger.info(
        f"Webhook {event_type} {event_id} {claim.outcome}"
        + (f" for order {order_id}" if order_id else "")
    )
    return True, order_id


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Returns (success: bool, message: str). Always succeeds once the
    signature has been verified.
    """
    event_id = event["id"]
    event_type = event["type"]
    obj = event["data"]["object"]
    entity_id = obj.get("id") or event_id

    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Ignoring unhandled webhook event type {event_type}")

    processed, order_id = process_if_new(
        event_id,
        entity_id,
        event_type,
        (lambda: handler(obj)) if handler else (lambda: None),
    )
    if not processed:
        return True, "already_processed"
    return True, "processed" if order_id else "ignored"


def purge_expired(retention_days=None):
    """Delete claims older than the retention window. Returns the count."""
    if retention_days is None:
        retention_days = current_app.config["WEBHOOK_EVENT_RETENTION_DAYS"]
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    count = WebhookEvent.query.filter(
        WebhookEvent.processed_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    logger.info(f"Purged {count} webhook events older than {retention_days} days")
    return count


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _find_order(payment_id=None, gateway_order_id=None):
    if payment_id:
        order = Order.query.filter_by(payment_id=payment_id).first()
        if order:
            return order
    if gateway_order_id:
        return Order.query.filter_by(gateway_order_id=gateway_order_id).first()
    return None


def _handle_charge_captured(charge):
    """charge.succeeded / charge.captured: money is ours."""
    order = _find_order(charge.get("id"), charge.get("payment_intent"))
    if order is None:
        logger.warning(
            f"No order for captured charge {charge.get('id')} "
            f"(intent {charge.get('payment_intent')})"
        )
        return None
    order_service.mark_payment_captured(
        order,
        payment_id=charge.get("id"),
        gateway_order_id=charge.get("payment_intent"),
    )
    return order.id


def _handle_charge_failed(charge):
    order = _find_order(charge.get("id"), charge.get("payment_intent"))
    if order is None:
        logger.warning(f"No order for failed charge {charge.get('id')}")
        return None
    order_service.mark_payment_failed(order, reason=charge.get("failure_message"))
    return order.id


def _handle_intent_succeeded(intent):
    order = _find_order(gateway_order_id=intent.get("id"))
    if order is None:
        logger.warning(f"No order for payment intent {intent.get('id')}")
        return None
    order_service.mark_payment_captured(
        order,
        payment_id=intent.get("latest_charge"),
        gateway_order_id=intent.get("id"),
    )
    return order.id


def _handle_intent_failed(intent):
    order = _find_order(gateway_order_id=intent.get("id"))
    if order is None:
        logger.warning(f"No order for failed payment intent {intent.get('id')}")
        return None
    error = intent.get("last_payment_error") or {}
    order_service.mark_payment_failed(order, reason=error.get("message"))
    return order.id


HANDLERS = {
    "charge.succeeded": _handle_charge_captured,
    "charge.captured": _handle_charge_captured,
    "charge.failed": _handle_charge_failed,
    "payment_intent.succeeded": _handle_intent_succeeded,
    "payment_intent.payment_failed": _handle_intent_failed,
}
