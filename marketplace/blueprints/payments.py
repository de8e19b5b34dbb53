"""Payments blueprint — /payments/*

Route Map:
  POST /payments/create-order        — payment intent for client checkout
  POST /payments/verify              — verify a payment proof (no order created)
  POST /payments/webhook             — Stripe callbacks; CSRF-exempt, signed body
  GET  /payments/status/<order_id>   — payment state of an order
  POST /payments/refund              — admin refund of an order
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from marketplace.decorators import admin_required
from marketplace.errors import ValidationError
from marketplace.extensions import csrf
from marketplace.services import order_service, payment_service
from marketplace.services.webhook_service import (
    handle_webhook_event,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


@payments_bp.route("/create-order", methods=["POST"])
@login_required
def create_payment_order():
    """Body: {amount, currency?, receipt?, notes?}."""
    data = request.get_json(silent=True) or {}
    if data.get("amount") is None:
        raise ValidationError("amount is required.", field="amount")

    intent = payment_service.create_payment_order(
        amount=data["amount"],
        currency=data.get("currency"),
        receipt=data.get("receipt"),
        notes=data.get("notes") if isinstance(data.get("notes"), dict) else None,
        user_id=current_user.id,
    )
    return jsonify(ok=True, payment_order=intent), 201


@payments_bp.route("/verify", methods=["POST"])
@login_required
def verify():
    """Body: {gateway_order_id, gateway_payment_id, signature, amount, currency?}."""
    data = request.get_json(silent=True) or {}
    if data.get("amount") is None:
        raise ValidationError("amount is required.", field="amount")

    verified = payment_service.verify(
        data.get("gateway_order_id"),
        data.get("gateway_payment_id"),
        data.get("signature"),
        expected_amount=data["amount"],
        currency=data.get("currency"),
    )
    return jsonify(
        ok=True,
        payment={
            "payment_id": verified.payment_id,
            "gateway_order_id": verified.gateway_order_id,
            "status": verified.status,
            "amount": float(verified.amount),
            "currency": verified.currency,
        },
    )


@payments_bp.route("/webhook", methods=["POST"])
@csrf.exempt
def webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Pass to handle_webhook_event (exactly-once via webhook_events)
    4. Return 200 to acknowledge receipt, even if a handler failed
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify(ok=False, error="Missing signature"), 400

    # --- Verify signature ---
    try:
        event = verify_webhook_signature(payload, sig_header)
    except Exception as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify(ok=False, error="Invalid signature"), 400

    # --- Process event (exactly once) ---
    _, message = handle_webhook_event(event)
    return jsonify(ok=True, status=message), 200


@payments_bp.route("/status/<order_id>", methods=["GET"])
@login_required
def payment_status(order_id):
    order = order_service.get_order_for(current_user, order_id)
    return jsonify(
        ok=True,
        order_id=order.id,
        status=order.status,
        payment_status=order.payment_status,
        payment_method=order.payment_method,
        payment_id=order.payment_id,
        refund_id=order.refund_id,
        total=float(order.total),
        currency=order.currency,
    )


@payments_bp.route("/refund", methods=["POST"])
@admin_required
def refund():
    """Body: {order_id, reason?}. Full refund of the captured amount."""
    data = request.get_json(silent=True) or {}
    if not data.get("order_id"):
        raise ValidationError("order_id is required.", field="order_id")

    order = order_service.refund_order(
        data["order_id"], current_user, reason=data.get("reason")
    )
    return jsonify(ok=True, order=order.to_dict())
