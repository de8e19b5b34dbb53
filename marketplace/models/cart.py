"""Cart item model (collaborator stand-in).

One row per product/variant in a customer's cart. The order pipeline only
ever clears a cart after a successful order.
"""

import uuid

from marketplace.extensions import db


class CartItem(db.Model):
    __tablename__ = "cart_items"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False
    )
    variant_id = db.Column(
        db.String(36), db.ForeignKey("product_variants.id"), nullable=True
    )
    quantity = db.Column(db.Integer, default=1, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<CartItem user={self.user_id} product={self.product_id} x{self.quantity}>"
