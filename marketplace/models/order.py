"""Order models and the order state machine.

- Order: one checkout. Totals, address snapshots, payment and fulfilment state.
- OrderItem: immutable line snapshot (product, variant, price, seller).
- OrderStatusEvent: append-only status history.

Status transitions are enforced via VALID_TRANSITIONS and next_status().
"""

import enum
import uuid

from marketplace.errors import InvalidTransition
from marketplace.extensions import db


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    FAILED = "failed"
    PAID = "paid"
    REFUNDED = "refunded"


# -- Valid status transitions (enforced in next_status) --
VALID_TRANSITIONS = {
    OrderStatus.PENDING: [OrderStatus.PROCESSING, OrderStatus.CANCELED],
    OrderStatus.PROCESSING: [OrderStatus.SHIPPED, OrderStatus.CANCELED],
    OrderStatus.SHIPPED: [OrderStatus.DELIVERED, OrderStatus.CANCELED],
    OrderStatus.DELIVERED: [OrderStatus.REFUNDED],
    OrderStatus.CANCELED: [],
    OrderStatus.REFUNDED: [],
}

TERMINAL_STATUSES = (OrderStatus.CANCELED, OrderStatus.REFUNDED)

# Payment status only moves forward through this ranking.
_PAYMENT_RANK = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.FAILED: 1,
    PaymentStatus.PAID: 2,
    PaymentStatus.REFUNDED: 3,
}


def next_status(current, target):
    """Return the target status if current -> target is allowed.

    Returns None when the order is already in the target (non-terminal)
    status, so callers can treat it as a no-op.

    Raises:
        InvalidTransition: target is unknown or not reachable from current.
    """
    current = OrderStatus(current)
    allowed = [s.value for s in VALID_TRANSITIONS[current]]
    try:
        target = OrderStatus(target)
    except ValueError:
        raise InvalidTransition(current.value, target, allowed)

    if current in TERMINAL_STATUSES:
        raise InvalidTransition(current.value, target.value, allowed)
    if target == current:
        return None
    if target not in VALID_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value, allowed)
    return target


def can_advance_payment(current, target):
    """True if payment status may move from current to target."""
    current = PaymentStatus(current)
    target = PaymentStatus(target)
    if target == PaymentStatus.REFUNDED:
        return current == PaymentStatus.PAID
    return _PAYMENT_RANK[target] > _PAYMENT_RANK[current]


def _iso(value):
    return value.isoformat() if value else None


class Order(db.Model):
    __tablename__ = "orders"

    # -- Valid delivery options --
    DELIVERY_OPTIONS = ["standard", "express", "overnight"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # Unique per customer; nullable, so any number of orders without a key.
    idempotency_key = db.Column(db.String(255), nullable=True)
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    total = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), default="inr", nullable=False)
    shipping_address = db.Column(db.JSON, nullable=False)
    billing_address = db.Column(db.JSON, nullable=True)
    same_as_shipping = db.Column(db.Boolean, default=True, nullable=False)
    delivery_option = db.Column(
        db.String(20), default="standard", nullable=False
    )  # standard | express | overnight
    payment_method = db.Column(db.String(50), nullable=False)
    payment_status = db.Column(
        db.String(20), default=PaymentStatus.PENDING.value, nullable=False
    )  # pending | failed | paid | refunded
    # One charge pays for at most one order.
    payment_id = db.Column(
        db.String(255), nullable=True, unique=True, index=True
    )  # ch_...
    gateway_order_id = db.Column(
        db.String(255), nullable=True, index=True
    )  # pi_...
    status = db.Column(
        db.String(20), default=OrderStatus.PENDING.value, nullable=False, index=True
    )
    assigned_seller_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    order_notes = db.Column(db.Text, nullable=True)
    gift_message = db.Column(db.Text, nullable=True)

    # Fulfilment
    tracking_number = db.Column(db.String(255), nullable=True)
    carrier = db.Column(db.String(100), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    estimated_delivery = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Invoice
    invoice_number = db.Column(db.String(50), nullable=True, unique=True)
    invoice_generated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Cancellation / refund
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    cancelled_by_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    refund_id = db.Column(db.String(255), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), index=True
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "user_id", "idempotency_key", name="uq_orders_user_idempotency_key"
        ),
    )

    # --- Relationships ---
    customer = db.relationship(
        "User", foreign_keys=[user_id], back_populates="orders"
    )
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )
    status_events = db.relationship(
        "OrderStatusEvent",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusEvent.created_at",
    )

    @property
    def seller_ids(self):
        return sorted({item.seller_id for item in self.items})

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "payment_id": self.payment_id,
            "gateway_order_id": self.gateway_order_id,
            "total": float(self.total),
            "currency": self.currency,
            "items": [item.to_dict() for item in self.items],
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "same_as_shipping": self.same_as_shipping,
            "delivery_option": self.delivery_option,
            "order_notes": self.order_notes,
            "gift_message": self.gift_message,
            "assigned_seller_id": self.assigned_seller_id,
            "tracking_number": self.tracking_number,
            "carrier": self.carrier,
            "shipped_at": _iso(self.shipped_at),
            "estimated_delivery": _iso(self.estimated_delivery),
            "delivered_at": _iso(self.delivered_at),
            "invoice_number": self.invoice_number,
            "cancelled_at": _iso(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "refund_id": self.refund_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Order {self.id} {self.status}/{self.payment_status}>"


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    position = db.Column(db.Integer, default=0, nullable=False)
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False
    )
    variant_id = db.Column(
        db.String(36), db.ForeignKey("product_variants.id"), nullable=True
    )
    seller_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    title = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    size = db.Column(db.String(50), nullable=True)
    color = db.Column(db.String(50), nullable=True)
    customization = db.Column(db.JSON, nullable=True)

    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
    )

    # --- Relationships ---
    order = db.relationship("Order", back_populates="items")

    @property
    def line_total(self):
        return self.unit_price * self.quantity

    def to_dict(self):
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "seller_id": self.seller_id,
            "title": self.title,
            "quantity": self.quantity,
            "unit_price": float(self.unit_price),
            "size": self.size,
            "color": self.color,
            "customization": self.customization,
        }

    def __repr__(self):
        return f"<OrderItem {self.product_id} x{self.quantity}>"


class OrderStatusEvent(db.Model):
    __tablename__ = "order_status_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    status = db.Column(db.String(20), nullable=False)
    actor_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )  # None for system / webhook updates
    note = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    order = db.relationship("Order", back_populates="status_events")

    def __repr__(self):
        return f"<OrderStatusEvent {self.order_id} -> {self.status}>"
