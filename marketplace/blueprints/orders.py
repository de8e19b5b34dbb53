"""Orders blueprint — /orders/*

JSON API over order_service. Services raise OrderError subclasses; the
app-level handler turns them into {ok: false, error, message} responses.

Route Map:
  POST  /orders                  — create (201), or replay (200 + duplicate)
  GET   /orders                  — list own orders (admins: all)
  GET   /orders/<id>             — order detail
  PATCH /orders/<id>/status      — admin, or a seller with a line in the order
  POST  /orders/<id>/cancel      — owner or admin, before shipping
  POST  /orders/<id>/reorder     — purchasable lines of a past order
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from marketplace.decorators import roles_required
from marketplace.errors import Forbidden, ValidationError
from marketplace.services import idempotency, order_service

logger = logging.getLogger(__name__)

orders_bp = Blueprint("orders", __name__, url_prefix="/orders")


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


@orders_bp.route("", methods=["POST"])
@login_required
def create():
    """Create an order from the checkout payload.

    Body:
        items: [{product_id, variant_id?, quantity, price?, size?, color?,
                 customization?}]
        shipping_address: {street, city, postal_code, country, phone, ...}
        billing_address?, same_as_shipping?, delivery_option?
        payment_method: card | upi | cod | ...
        payment: {gateway_order_id, gateway_payment_id, signature}
                 (not needed for cod)
        order_notes?, gift_message?, idempotency_key?

    The Idempotency-Key header takes precedence over the body field.
    """
    data = _json_body()
    key = idempotency.resolve_key(request.headers, data)

    result = order_service.create_order(
        customer_id=current_user.id,
        line_items=data.get("items"),
        shipping_address=data.get("shipping_address"),
        payment_method=data.get("payment_method"),
        payment_proof=data.get("payment"),
        idempotency_key=key,
        billing_address=data.get("billing_address"),
        same_as_shipping=data.get("same_as_shipping", True),
        delivery_option=data.get("delivery_option"),
        order_notes=data.get("order_notes"),
        gift_message=data.get("gift_message"),
    )
    return jsonify(result.to_dict()), result.status_code


@orders_bp.route("", methods=["GET"])
@login_required
def index():
    result = order_service.list_orders(
        current_user,
        page=request.args.get("page", 1, type=int),
        limit=request.args.get("limit", 10, type=int),
        status=request.args.get("status") or None,
    )
    return jsonify(ok=True, **result)


@orders_bp.route("/<order_id>", methods=["GET"])
@login_required
def detail(order_id):
    order = order_service.get_order_for(current_user, order_id)
    return jsonify(ok=True, order=order.to_dict())


@orders_bp.route("/<order_id>/status", methods=["PATCH"])
@roles_required("seller", "designer")
def update_status(order_id):
    """Body: {status, notes?, tracking?: {tracking_number, carrier,
    estimated_delivery}}."""
    data = _json_body()
    target = data.get("status")
    if not target:
        raise ValidationError("status is required.", field="status")

    order = order_service.get_order_for(current_user, order_id)
    if not order_service.can_update_status(current_user, order, target):
        raise Forbidden("You cannot change this order's status.")

    tracking = data.get("tracking")
    if tracking is not None and not isinstance(tracking, dict):
        raise ValidationError("tracking must be an object.", field="tracking")

    order = order_service.update_status(
        order_id,
        target,
        actor_id=current_user.id,
        notes=data.get("notes"),
        tracking=tracking,
    )
    return jsonify(ok=True, order=order.to_dict())


@orders_bp.route("/<order_id>/cancel", methods=["POST"])
@login_required
def cancel(order_id):
    data = request.get_json(silent=True) or {}
    order = order_service.cancel_order(order_id, current_user, data.get("reason"))
    return jsonify(ok=True, order=order.to_dict())


@orders_bp.route("/<order_id>/reorder", methods=["POST"])
@login_required
def reorder(order_id):
    result = order_service.reorder(order_id, current_user)
    return jsonify(ok=True, **result)
