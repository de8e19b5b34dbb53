"""Catalog models (collaborator stand-ins).

- Product: a sellable item with product-level stock and commission settings.
- ProductVariant: size/colour variant with its own stock and optional price.

Catalog CRUD lives elsewhere. Here the rows are only read by the order
pipeline; the stock columns are owned by services/inventory_ledger.py and
must never be written by anything else.
"""

import uuid

from marketplace.extensions import db


class Product(db.Model):
    __tablename__ = "products"

    # -- Valid publish statuses --
    STATUSES = ["draft", "pending_review", "published"]

    # -- Valid commission types --
    COMMISSION_TYPES = ["percentage", "fixed"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    seller_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    title = db.Column(db.String(255), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), default="inr", nullable=False)
    stock = db.Column(db.Integer, default=0, nullable=False)
    is_approved = db.Column(db.Boolean, default=False, nullable=False)
    status = db.Column(
        db.String(50), default="draft", nullable=False
    )  # draft | pending_review | published
    commission_type = db.Column(
        db.String(20), default="percentage", nullable=False
    )  # percentage | fixed
    commission_rate = db.Column(
        db.Numeric(10, 2), default=30, nullable=False
    )  # percent, or fixed amount per unit
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_approved_status", "is_approved", "status"),
    )

    # --- Relationships ---
    seller = db.relationship("User", back_populates="products")
    variants = db.relationship(
        "ProductVariant",
        back_populates="product",
        lazy="dynamic",
        cascade="all, delete-orphan",
    )

    @property
    def is_purchasable(self):
        return self.is_approved and self.status == "published"

    def __repr__(self):
        return f"<Product {self.title} stock={self.stock}>"


class ProductVariant(db.Model):
    __tablename__ = "product_variants"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False, index=True
    )
    sku = db.Column(db.String(100), nullable=True)
    size = db.Column(db.String(50), nullable=True)
    color = db.Column(db.String(50), nullable=True)
    price = db.Column(db.Numeric(12, 2), nullable=True)  # overrides Product.price
    stock = db.Column(db.Integer, default=0, nullable=False)

    __table_args__ = (
        db.CheckConstraint(
            "stock >= 0", name="ck_product_variants_stock_non_negative"
        ),
    )

    # --- Relationships ---
    product = db.relationship("Product", back_populates="variants")

    def __repr__(self):
        return f"<ProductVariant {self.sku or self.id} stock={self.stock}>"
