"""Order service — checkout pipeline, status machine, cancellation, refunds.

create_order() is the only way an order comes into existence:

    idempotency lookup -> validate payload -> price lines -> verify payment
    -> unit of work (order + stock reservations + commissions)
    -> invoice/audit -> clear cart -> queue confirmation email

Nothing is written before payment verification succeeds. Side effects after
the unit of work (cart, email) are best-effort and never fail the order.

Status changes go through next_status() in models/order.py. Stock is only
ever touched through inventory_ledger, seller earnings only through
commission_ledger.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

import bleach
from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from marketplace.errors import (
    DuplicateRequest,
    Forbidden,
    InsufficientStock,
    NotAvailable,
    NotFound,
    PaymentVerificationFailed,
    RefundFailed,
    ValidationError,
)
from marketplace.extensions import db, tasks
from marketplace.models.audit import AuditEvent
from marketplace.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusEvent,
    PaymentStatus,
    can_advance_payment,
    next_status,
)
from marketplace.models.product import Product, ProductVariant
from marketplace.models.user import User
from marketplace.services import (
    cart_service,
    commission_ledger,
    idempotency,
    inventory_ledger,
    notification_service,
    payment_service,
)
from marketplace.services.unit_of_work import select_unit_of_work

logger = logging.getLogger(__name__)

POSTAL_CODE_RE = re.compile(r"^\d{5,10}$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")

ADDRESS_REQUIRED = ("street", "city", "postal_code", "country", "phone")
ADDRESS_OPTIONAL = ("full_name", "address_line2", "landmark", "state")

GIFT_MESSAGE_MAX = 500
ORDER_NOTES_MAX = 1000

# Statuses at which goods have left the warehouse; stock is not restored.
_SHIPPED_STATUSES = (OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value)

# Sellers may move their orders along, but never refund them.
SELLER_ALLOWED_TARGETS = (
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELED.value,
)


class OrderResult:
    """Outcome of create_order(). duplicate=True means an idempotent replay."""

    def __init__(self, order, duplicate=False, degraded=False):
        self.order = order
        self.duplicate = duplicate
        self.degraded = degraded

    @property
    def status_code(self):
        return DuplicateRequest.status_code if self.duplicate else 201

    def to_dict(self):
        data = {
            "ok": True,
            "order": self.order.to_dict(),
            "duplicate": self.duplicate,
            "degraded": self.degraded,
        }
        if self.duplicate:
            data["kind"] = DuplicateRequest.kind
        return data


def _sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(str(text), tags=[], strip=True).strip()


def _now():
    return datetime.now(timezone.utc)


def generate_invoice_number(order_id, when=None):
    """INV-YYYYMM-<last 8 chars of the order id, upper-cased>."""
    when = when or _now()
    return f"INV-{when:%Y%m}-{order_id.replace('-', '')[-8:].upper()}"


def _audit(action, order_id, actor_user_id=None, **metadata):
    db.session.add(
        AuditEvent(
            order_id=order_id,
            actor_user_id=actor_user_id,
            action=action,
            metadata_=metadata,
        )
    )


# ──────────────────────────────────────────────
# Payload validation
# ──────────────────────────────────────────────

def _validate_address(address, label="shipping_address"):
    if not isinstance(address, dict):
        raise ValidationError(f"{label} is required.", field=label)

    clean = {}
    for field in ADDRESS_REQUIRED:
        value = _sanitize(address.get(field))
        if not value:
            raise ValidationError(f"{label}.{field} is required.", field=f"{label}.{field}")
        clean[field] = value
    for field in ADDRESS_OPTIONAL:
        value = _sanitize(address.get(field))
        if value:
            clean[field] = value

    if not POSTAL_CODE_RE.match(clean["postal_code"]):
        raise ValidationError(
            "Postal code must be 5-10 digits.", field=f"{label}.postal_code"
        )
    if not PHONE_RE.match(clean["phone"]):
        raise ValidationError(
            "Phone number must be in international format.", field=f"{label}.phone"
        )
    return clean


def _validate_lines(line_items):
    max_lines = current_app.config["ORDER_MAX_LINES"]
    max_quantity = current_app.config["ORDER_MAX_LINE_QUANTITY"]

    if not isinstance(line_items, list) or not line_items:
        raise ValidationError("Order must contain at least one item.", field="items")
    if len(line_items) > max_lines:
        raise ValidationError(
            f"Order cannot contain more than {max_lines} items.", field="items"
        )

    lines = []
    for index, raw in enumerate(line_items):
        if not isinstance(raw, dict) or not raw.get("product_id"):
            raise ValidationError(
                f"Item {index + 1}: product_id is required.",
                field=f"items[{index}].product_id",
            )
        quantity = raw.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError(
                f"Item {index + 1}: quantity must be a whole number.",
                field=f"items[{index}].quantity",
            )
        if quantity < 1 or quantity > max_quantity:
            raise ValidationError(
                f"Item {index + 1}: quantity must be between 1 and {max_quantity}.",
                field=f"items[{index}].quantity",
            )

        client_price = raw.get("price")
        if client_price is not None:
            try:
                client_price = Decimal(str(client_price))
            except InvalidOperation:
                raise ValidationError(
                    f"Item {index + 1}: price must be a number.",
                    field=f"items[{index}].price",
                )
            if not client_price.is_finite() or client_price <= 0:
                raise ValidationError(
                    f"Item {index + 1}: price must be greater than zero.",
                    field=f"items[{index}].price",
                )

        customization = raw.get("customization")
        if customization is not None and not isinstance(customization, dict):
            raise ValidationError(
                f"Item {index + 1}: customization must be an object.",
                field=f"items[{index}].customization",
            )
        if customization:
            customization = {
                k: _sanitize(v) if isinstance(v, str) else v
                for k, v in customization.items()
            }

        lines.append({
            "product_id": str(raw["product_id"]),
            "variant_id": str(raw["variant_id"]) if raw.get("variant_id") else None,
            "quantity": quantity,
            "price": client_price,
            "size": _sanitize(raw.get("size")) or None,
            "color": _sanitize(raw.get("color")) or None,
            "customization": customization or None,
        })
    return lines


def _validate_text(value, field, max_length):
    value = _sanitize(value)
    if value and len(value) > max_length:
        raise ValidationError(
            f"{field} must be at most {max_length} characters.", field=field
        )
    return value or None


# ──────────────────────────────────────────────
# Pricing
# ──────────────────────────────────────────────

def trusted_unit_price(catalog_price, client_price, product_id=None):
    """Resolve the price actually charged for one unit.

    The client's cart snapshot is preferred. If it differs from the live
    catalog price by more than PRICE_TOLERANCE_PERCENT, PRICE_MISMATCH_POLICY
    decides: clamp_lower (charge the lower price), catalog (charge the
    catalog price) or reject. Every discrepancy is logged.
    """
    catalog_price = Decimal(str(catalog_price)).quantize(Decimal("0.01"))
    if client_price is None:
        return catalog_price
    client_price = Decimal(str(client_price)).quantize(Decimal("0.01"))
    if client_price == catalog_price:
        return catalog_price

    tolerance = Decimal(str(current_app.config["PRICE_TOLERANCE_PERCENT"]))
    policy = current_app.config["PRICE_MISMATCH_POLICY"]
    if catalog_price > 0:
        diff_percent = abs(client_price - catalog_price) / catalog_price * 100
    else:
        diff_percent = Decimal(100)

    logger.warning(
        f"Price discrepancy for product {product_id}: client {client_price}, "
        f"catalog {catalog_price} ({diff_percent:.2f}%)"
    )

    if diff_percent <= tolerance:
        return client_price
    if policy == "catalog":
        return catalog_price
    if policy == "reject":
        raise ValidationError(
            "Price has changed since the item was added to the cart.",
            product_id=product_id,
            catalog_price=float(catalog_price),
        )
    return min(client_price, catalog_price)


def _price_lines(lines):
    """Load catalog rows, check availability and stock, and fix prices."""
    priced = []
    for line in lines:
        product = db.session.get(Product, line["product_id"])
        if product is None:
            raise NotFound("Product not found.", product_id=line["product_id"])
        if not product.is_purchasable:
            raise NotAvailable(
                f"'{product.title}' is not available for purchase.",
                product_id=product.id,
            )

        variant = None
        if line["variant_id"]:
            variant = db.session.get(ProductVariant, line["variant_id"])
            if variant is None or variant.product_id != product.id:
                raise NotFound(
                    "Product variant not found.",
                    product_id=product.id,
                    variant_id=line["variant_id"],
                )

        stock = variant.stock if variant else product.stock
        if stock < line["quantity"]:
            raise InsufficientStock(
                f"Insufficient stock for '{product.title}'. Only {stock} left.",
                product_id=product.id,
                variant_id=variant.id if variant else None,
                available_stock=stock,
            )

        catalog_price = (
            variant.price if variant and variant.price is not None else product.price
        )
        unit_price = trusted_unit_price(catalog_price, line["price"], product.id)
        priced.append(dict(line, product=product, variant=variant, unit_price=unit_price))
    return priced


def _commission_entries(priced):
    default_type = current_app.config["DEFAULT_COMMISSION_TYPE"]
    default_rate = current_app.config["DEFAULT_COMMISSION_RATE"]
    entries = []
    for line in priced:
        product = line["product"]
        seller = product.seller
        if seller is None or seller.role not in User.SELLER_ROLES:
            continue
        entries.append({
            "seller_id": seller.id,
            "product_id": product.id,
            "quantity": line["quantity"],
            "unit_price": line["unit_price"],
            "commission_type": product.commission_type or default_type,
            "rate": (
                product.commission_rate
                if product.commission_rate is not None
                else default_rate
            ),
        })
    return entries


# ──────────────────────────────────────────────
# Creation
# ──────────────────────────────────────────────

def _ensure_charge_unused(payment_id):
    """A verified charge pays for one order only. orders.payment_id is unique."""
    used_by = db.session.execute(
        db.select(Order.id).where(Order.payment_id == payment_id)
    ).scalar_one_or_none()
    if used_by is not None:
        logger.warning(
            f"Payment {payment_id} already used by order {used_by}, rejecting"
        )
        raise PaymentVerificationFailed("Payment already used")


def create_order(customer_id, line_items, shipping_address, payment_method,
                 payment_proof=None, idempotency_key=None, billing_address=None,
                 same_as_shipping=True, delivery_option="standard",
                 order_notes=None, gift_message=None, currency=None):
    """Create an order exactly once per checkout attempt.

    Args:
        customer_id: Ordering user's UUID string.
        line_items: list of dicts with product_id, quantity and optional
            variant_id, price (client snapshot), size, color, customization.
        shipping_address: dict, see ADDRESS_REQUIRED / ADDRESS_OPTIONAL.
        payment_method: one of PAYMENT_METHODS.
        payment_proof: dict with gateway_order_id, gateway_payment_id and
            signature. Required unless the method is deferred (cod).
        idempotency_key: client key; a replay returns the original order.

    Returns:
        OrderResult.

    Raises:
        ValidationError, NotFound, NotAvailable, InsufficientStock,
        PaymentVerificationFailed, GatewayUnavailable. Nothing is persisted
        when any of these is raised.
    """
    # --- 1. Idempotency short-circuit, before the payload is even read ---
    existing = idempotency.lookup(idempotency_key, customer_id)
    if existing is not None:
        logger.info(
            f"Duplicate order request with key {idempotency_key}, "
            f"returning order {existing.id}"
        )
        return OrderResult(existing, duplicate=True)

    # --- 2. Validate (no side effects) ---
    lines = _validate_lines(line_items)
    shipping = _validate_address(shipping_address)
    if same_as_shipping or not billing_address:
        billing = dict(shipping)
        same_as_shipping = True
    else:
        billing = _validate_address(billing_address, "billing_address")

    if payment_method not in current_app.config["PAYMENT_METHODS"]:
        raise ValidationError(
            f"Invalid payment method '{payment_method}'. Must be one of: "
            f"{', '.join(current_app.config['PAYMENT_METHODS'])}",
            field="payment_method",
        )
    delivery_option = delivery_option or "standard"
    if delivery_option not in Order.DELIVERY_OPTIONS:
        raise ValidationError(
            f"Invalid delivery option '{delivery_option}'. Must be one of: "
            f"{', '.join(Order.DELIVERY_OPTIONS)}",
            field="delivery_option",
        )
    order_notes = _validate_text(order_notes, "order_notes", ORDER_NOTES_MAX)
    gift_message = _validate_text(gift_message, "gift_message", GIFT_MESSAGE_MAX)
    currency = (currency or current_app.config["DEFAULT_CURRENCY"]).lower()

    deferred = payment_method in current_app.config["DEFERRED_PAYMENT_METHODS"]
    if not deferred and not payment_proof:
        raise ValidationError(
            "Payment proof is required for online payment.", field="payment"
        )
    if not deferred and not isinstance(payment_proof, dict):
        raise ValidationError(
            "Payment proof must be an object with gateway_order_id, "
            "gateway_payment_id and signature.",
            field="payment",
        )

    # --- 3. Price lines against the live catalog ---
    priced = _price_lines(lines)
    total = sum(
        (line["unit_price"] * line["quantity"] for line in priced), Decimal("0")
    )

    # --- 4. Verify payment before anything is written ---
    verified = None
    if not deferred:
        verified = payment_service.verify(
            payment_proof.get("gateway_order_id"),
            payment_proof.get("gateway_payment_id"),
            payment_proof.get("signature"),
            expected_amount=total,
            currency=currency,
        )
        _ensure_charge_unused(verified.payment_id)

    # --- 5. Unit of work ---
    now = _now()
    order_id = str(uuid.uuid4())
    seller_ids = {line["product"].seller_id for line in priced}
    status = OrderStatus.PROCESSING if verified else OrderStatus.PENDING

    order = Order(
        id=order_id,
        idempotency_key=idempotency_key,
        user_id=customer_id,
        total=total,
        currency=currency,
        shipping_address=shipping,
        billing_address=billing,
        same_as_shipping=same_as_shipping,
        delivery_option=delivery_option,
        payment_method=payment_method,
        payment_status=(
            PaymentStatus.PAID.value if verified else PaymentStatus.PENDING.value
        ),
        payment_id=verified.payment_id if verified else None,
        gateway_order_id=verified.gateway_order_id if verified else None,
        status=status.value,
        assigned_seller_id=seller_ids.pop() if len(seller_ids) == 1 else None,
        order_notes=order_notes,
        gift_message=gift_message,
        invoice_number=generate_invoice_number(order_id, now),
        invoice_generated_at=now,
    )
    for position, line in enumerate(priced):
        order.items.append(
            OrderItem(
                position=position,
                product_id=line["product"].id,
                variant_id=line["variant"].id if line["variant"] else None,
                seller_id=line["product"].seller_id,
                title=line["product"].title,
                quantity=line["quantity"],
                unit_price=line["unit_price"],
                size=line["size"],
                color=line["color"],
                customization=line["customization"],
            )
        )
    order.status_events.append(
        OrderStatusEvent(
            status=status.value,
            actor_user_id=customer_id,
            note="Order placed",
        )
    )

    reservations = [
        (line["product"].id, line["variant"].id if line["variant"] else None,
         line["quantity"])
        for line in priced
    ]
    entries = _commission_entries(priced)

    uow = select_unit_of_work()
    try:
        uow.apply(order, reservations, entries)
    except IntegrityError:
        winner = idempotency.lookup(idempotency_key, customer_id)
        if winner is None:
            if verified:
                _ensure_charge_unused(verified.payment_id)
            raise
        logger.warning(
            f"Concurrent duplicate order with key {idempotency_key}, "
            f"returning order {winner.id}"
        )
        return OrderResult(winner, duplicate=True)

    logger.info(
        f"Order {order_id} created for user {customer_id}: total {total} "
        f"{currency}, {len(priced)} lines, payment {payment_method}"
        + (" (degraded transaction mode)" if uow.degraded else "")
    )

    # --- 6. Best-effort follow-ups ---
    try:
        _audit(
            "order.created",
            order_id,
            customer_id,
            total=str(total),
            payment_method=payment_method,
            degraded=uow.degraded,
        )
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to write audit event for order {order_id}: {e}")

    try:
        cart_service.clear_cart(customer_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(
            f"Failed to clear cart for user {customer_id} after order {order_id}: {e}",
            exc_info=True,
        )

    tasks.submit(
        "order_confirmation_email",
        notification_service.send_order_confirmation,
        order_id,
    )

    order = db.session.get(Order, order_id)
    return OrderResult(order, duplicate=False, degraded=uow.degraded)


# ──────────────────────────────────────────────
# Payment state (webhooks)
# ──────────────────────────────────────────────

def mark_payment_captured(order, payment_id=None, gateway_order_id=None):
    """Record a gateway capture. pending orders move on to processing.

    Flushes but does NOT commit. Returns True if anything changed.
    """
    if not can_advance_payment(order.payment_status, PaymentStatus.PAID):
        logger.info(
            f"Order {order.id} payment already {order.payment_status}, "
            f"capture ignored"
        )
        return False

    order.payment_status = PaymentStatus.PAID.value
    if payment_id and not order.payment_id:
        order.payment_id = payment_id
    if gateway_order_id and not order.gateway_order_id:
        order.gateway_order_id = gateway_order_id

    if order.status == OrderStatus.PENDING.value:
        _apply_transition(order, OrderStatus.PROCESSING, None, "Payment captured")
    elif order.status in (OrderStatus.CANCELED.value, OrderStatus.REFUNDED.value):
        logger.warning(
            f"Payment captured for {order.status} order {order.id}; "
            f"refund pending (see retry-refunds)"
        )
    db.session.flush()
    return True


def mark_payment_failed(order, reason=None):
    """pending -> failed. Never downgrades a paid or refunded order."""
    if not can_advance_payment(order.payment_status, PaymentStatus.FAILED):
        return False
    order.payment_status = PaymentStatus.FAILED.value
    _audit("order.payment_failed", order.id, reason=reason)
    db.session.flush()
    logger.warning(f"Payment failed for order {order.id}: {reason}")
    return True


# ──────────────────────────────────────────────
# Status machine
# ──────────────────────────────────────────────

def _apply_transition(order, target, actor_id, note=None):
    """Status change side effects. Flushes, caller commits."""
    previous = order.status
    now = _now()
    order.status = target.value

    if target == OrderStatus.DELIVERED:
        order.delivered_at = now
        commission_ledger.approve_for_order(order.id)
    elif target in (OrderStatus.CANCELED, OrderStatus.REFUNDED):
        commission_ledger.cancel_for_order(order.id)
        if previous not in _SHIPPED_STATUSES:
            for item in order.items:
                inventory_ledger.restore(item.product_id, item.variant_id, item.quantity)
        if target == OrderStatus.CANCELED and order.cancelled_at is None:
            order.cancelled_at = now
            order.cancelled_by_id = actor_id
            order.cancellation_reason = order.cancellation_reason or note

    order.status_events.append(
        OrderStatusEvent(status=target.value, actor_user_id=actor_id, note=note)
    )
    _audit(
        "order.status_changed",
        order.id,
        actor_id,
        previous=previous,
        status=target.value,
        note=note,
    )
    db.session.flush()


def _parse_datetime(value, field):
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO 8601 date.", field=field)


def update_status(order_id, new_status, actor_id=None, notes=None, tracking=None):
    """Move an order along the status graph.

    Args:
        tracking: optional dict with tracking_number, carrier and
            estimated_delivery, applied when shipping.

    Returns:
        The Order. Re-applying the current (non-terminal) status is a no-op.

    Raises:
        NotFound, InvalidTransition.

    A refund is requested when a paid order is canceled or refunded. If the
    gateway refuses, the failure is logged and the status change stands;
    retry-refunds picks it up later.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found.")

    target = next_status(order.status, new_status)
    if target is None:
        return order

    note = _sanitize(notes) or None
    if target == OrderStatus.SHIPPED:
        tracking = tracking or {}
        estimated = _parse_datetime(
            tracking.get("estimated_delivery"), "estimated_delivery"
        )
        order.shipped_at = _now()
        order.tracking_number = _sanitize(tracking.get("tracking_number")) or order.tracking_number
        order.carrier = _sanitize(tracking.get("carrier")) or order.carrier
        if estimated is not None:
            order.estimated_delivery = estimated

    previous = order.status
    _apply_transition(order, target, actor_id, note)
    db.session.commit()
    logger.info(f"Order {order_id} status {previous} -> {target.value} by {actor_id}")

    if (
        target in (OrderStatus.CANCELED, OrderStatus.REFUNDED)
        and order.payment_status == PaymentStatus.PAID.value
    ):
        try:
            refund_payment(order, reason=note, actor_id=actor_id)
        except RefundFailed as e:
            logger.error(
                f"Refund failed for order {order_id} after {target.value}: {e.message}"
            )

    if target == OrderStatus.CANCELED:
        tasks.submit(
            "order_cancelled_email",
            notification_service.send_order_cancelled,
            order_id,
        )
    return order


def refund_payment(order, reason=None, actor_id=None):
    """Refund the full captured amount of a paid order and record it.

    Commits. Raises RefundFailed when the gateway refuses.
    """
    if order.payment_status != PaymentStatus.PAID.value:
        raise ValidationError("Only paid orders can be refunded.")
    if not order.payment_id:
        raise RefundFailed(
            "Order has no gateway payment to refund; refund it manually."
        )

    refund_id = payment_service.refund(
        order.payment_id, order.total, reason=reason, currency=order.currency
    )
    order.refund_id = refund_id
    order.payment_status = PaymentStatus.REFUNDED.value
    _audit(
        "order.refunded",
        order.id,
        actor_id,
        refund_id=refund_id,
        amount=str(order.total),
    )
    db.session.commit()
    logger.info(f"Order {order.id} refunded ({refund_id})")
    return refund_id


def refund_order(order_id, actor, reason=None):
    """Admin refund: settle the order status and refund the payment.

    Delivered orders become refunded, unshipped or shipped orders are
    canceled, already-terminal orders just get the refund retried.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found.")
    if order.payment_status != PaymentStatus.PAID.value:
        raise ValidationError(
            f"Only paid orders can be refunded (payment is {order.payment_status})."
        )

    reason = _sanitize(reason) or "Refund issued by admin"
    if order.status == OrderStatus.DELIVERED.value:
        update_status(order_id, OrderStatus.REFUNDED.value, actor.id, notes=reason)
    elif order.status in (OrderStatus.CANCELED.value, OrderStatus.REFUNDED.value):
        refund_payment(order, reason=reason, actor_id=actor.id)
    else:
        update_status(order_id, OrderStatus.CANCELED.value, actor.id, notes=reason)

    order = db.session.get(Order, order_id)
    if order.payment_status != PaymentStatus.REFUNDED.value:
        raise RefundFailed(
            "Order status updated, but the refund could not be processed."
        )
    return order


def cancel_order(order_id, actor, reason=None):
    """Cancel on behalf of the customer (or an admin) before shipping."""
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found.")
    if not (actor.is_admin or order.user_id == actor.id):
        raise Forbidden("You cannot cancel this order.")
    if order.status not in (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value):
        raise ValidationError(
            f"Order cannot be cancelled once it is {order.status}.",
            current=order.status,
        )

    reason = _sanitize(reason) or "Cancelled by customer"
    order.cancellation_reason = reason
    order.cancelled_by_id = actor.id
    order.cancelled_at = _now()
    return update_status(order_id, OrderStatus.CANCELED.value, actor.id, notes=reason)


def retry_pending_refunds(dry_run=False):
    """Refund canceled/refunded orders still marked paid. Returns a summary."""
    orders = (
        Order.query
        .filter(
            Order.status.in_([OrderStatus.CANCELED.value, OrderStatus.REFUNDED.value]),
            Order.payment_status == PaymentStatus.PAID.value,
            Order.refund_id.is_(None),
            Order.payment_id.isnot(None),
        )
        .order_by(Order.created_at)
        .all()
    )
    summary = {"found": len(orders), "refunded": 0, "failed": 0}
    if dry_run:
        return summary

    for order in orders:
        try:
            refund_payment(order, reason="Refund retry")
            summary["refunded"] += 1
        except RefundFailed as e:
            summary["failed"] += 1
            logger.error(f"Refund retry failed for order {order.id}: {e.message}")
    return summary


# ──────────────────────────────────────────────
# Queries
# ──────────────────────────────────────────────

def _is_seller_on(user, order):
    return user.is_seller and any(item.seller_id == user.id for item in order.items)


def can_update_status(user, order, target):
    if user.is_admin:
        return True
    return _is_seller_on(user, order) and target in SELLER_ALLOWED_TARGETS


def get_order_for(user, order_id):
    """Fetch an order the user may see: owner, admin, or a seller on it."""
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found.")
    if not (user.is_admin or order.user_id == user.id or _is_seller_on(user, order)):
        raise Forbidden("You do not have access to this order.")
    return order


def list_orders(user, page=1, limit=10, status=None):
    """Newest first. Admins see every order, everyone else their own."""
    limit = max(1, min(int(limit), 100))
    page = max(1, int(page))

    stmt = db.select(Order).order_by(Order.created_at.desc(), Order.id)
    if not user.is_admin:
        stmt = stmt.where(Order.user_id == user.id)
    if status:
        valid = [s.value for s in OrderStatus]
        if status not in valid:
            raise ValidationError(
                f"Invalid status '{status}'. Must be one of: {', '.join(valid)}"
            )
        stmt = stmt.where(Order.status == status)

    pagination = db.paginate(stmt, page=page, per_page=limit, error_out=False)
    return {
        "orders": [order.to_dict() for order in pagination.items],
        "page": page,
        "limit": limit,
        "total": pagination.total,
        "pages": pagination.pages,
    }


def reorder(order_id, user):
    """Lines of a past order that can be bought again. Never creates an order."""
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found.")
    if not (user.is_admin or order.user_id == user.id):
        raise Forbidden("You cannot reorder this order.")

    max_quantity = current_app.config["ORDER_MAX_LINE_QUANTITY"]
    available, unavailable = [], []
    for item in order.items:
        entry = {
            "product_id": item.product_id,
            "variant_id": item.variant_id,
            "title": item.title,
        }
        product = db.session.get(Product, item.product_id)
        if product is None or not product.is_purchasable:
            unavailable.append(dict(entry, reason="Product is no longer available"))
            continue

        variant = None
        if item.variant_id:
            variant = db.session.get(ProductVariant, item.variant_id)
            if variant is None:
                unavailable.append(dict(entry, reason="Variant is no longer available"))
                continue

        stock = variant.stock if variant else product.stock
        if stock < 1:
            unavailable.append(dict(entry, reason="Out of stock"))
            continue

        price = variant.price if variant and variant.price is not None else product.price
        available.append(dict(
            entry,
            quantity=min(item.quantity, stock, max_quantity),
            requested_quantity=item.quantity,
            price=float(price),
            size=item.size,
            color=item.color,
            customization=item.customization,
        ))

    return {"items": available, "unavailable": unavailable}
