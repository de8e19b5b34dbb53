"""Commission model.

One row per (order, seller, product line). The amount is always derived
from its inputs: a before_insert / before_update listener recomputes it so
a row can never carry an amount that disagrees with quantity, price and rate.
"""

import uuid
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import event

from marketplace.extensions import db


def compute_commission(commission_type, rate, unit_price, quantity):
    """Commission owed for one line.

    percentage: round_half_up(unit_price * quantity * rate / 100)
    fixed:      rate * quantity
    """
    rate = Decimal(str(rate))
    if commission_type == "fixed":
        return (rate * quantity).quantize(Decimal("0.01"))
    gross = Decimal(str(unit_price)) * quantity * rate / Decimal(100)
    return gross.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


class Commission(db.Model):
    __tablename__ = "commissions"

    # -- Valid statuses --
    STATUSES = ["pending", "approved", "paid", "cancelled"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    seller_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False
    )
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    order_total = db.Column(db.Numeric(12, 2), nullable=False)  # line total
    commission_type = db.Column(
        db.String(20), default="percentage", nullable=False
    )  # percentage | fixed
    rate = db.Column(db.Numeric(10, 2), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    status = db.Column(
        db.String(20), default="pending", nullable=False, index=True
    )  # pending | approved | paid | cancelled
    payout_date = db.Column(db.DateTime(timezone=True), nullable=True)
    payout_batch_id = db.Column(db.String(255), nullable=True)
    payout_transaction_id = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    seller = db.relationship("User", back_populates="commissions")

    def recompute(self):
        self.order_total = Decimal(str(self.unit_price)) * self.quantity
        self.amount = compute_commission(
            self.commission_type, self.rate, self.unit_price, self.quantity
        )

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "seller_id": self.seller_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": float(self.unit_price),
            "commission_type": self.commission_type,
            "rate": float(self.rate),
            "amount": float(self.amount),
            "status": self.status,
        }

    def __repr__(self):
        return f"<Commission {self.seller_id} {self.amount} ({self.status})>"


@event.listens_for(Commission, "before_insert")
@event.listens_for(Commission, "before_update")
def _recompute_amount(mapper, connection, target):
    target.recompute()
