"""User model.

Stores authentication credentials, role, and the seller earnings counter.
Flask-Login integration via UserMixin.

total_earnings is only ever changed with a single atomic UPDATE
(see services/commission_ledger.py), never read-modify-write.
"""

import uuid

from flask_login import UserMixin

from marketplace.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    # -- Valid roles --
    ROLES = ["customer", "seller", "designer", "admin"]

    # -- Roles that earn commission on their products --
    SELLER_ROLES = ["seller", "designer"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    role = db.Column(
        db.String(50), default="customer", nullable=False
    )  # customer | seller | designer | admin
    total_earnings = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    orders = db.relationship(
        "Order",
        foreign_keys="Order.user_id",
        back_populates="customer",
        lazy="dynamic",
    )
    products = db.relationship("Product", back_populates="seller", lazy="dynamic")
    commissions = db.relationship(
        "Commission", back_populates="seller", lazy="dynamic"
    )

    @property
    def is_admin(self):
        return self.role == "admin"

    @property
    def is_seller(self):
        return self.role in self.SELLER_ROLES

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"
