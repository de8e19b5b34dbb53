"""Inventory ledger — the only code that writes product or variant stock.

Decrements are a single conditional UPDATE (stock = stock - q WHERE
stock >= q), never read-then-write, so concurrent checkouts for the last
units cannot oversell. Increments only happen on cancellation, refund or
compensation of a failed creation.

Functions execute against the current session but do NOT commit.
"""

import logging

import sqlalchemy as sa

from marketplace.errors import InsufficientStock, NotFound
from marketplace.extensions import db
from marketplace.models.product import Product, ProductVariant

logger = logging.getLogger(__name__)


def _target(product_id, variant_id):
    if variant_id:
        return ProductVariant, (
            ProductVariant.id == variant_id,
            ProductVariant.product_id == product_id,
        )
    return Product, (Product.id == product_id,)


def available(product_id, variant_id=None):
    """Current stock for a product or variant, or None if it doesn't exist."""
    model, criteria = _target(product_id, variant_id)
    return db.session.execute(
        sa.select(model.stock).where(*criteria)
    ).scalar_one_or_none()


def reserve(product_id, variant_id, quantity):
    """Atomically take `quantity` units out of stock.

    Raises:
        InsufficientStock: fewer than `quantity` units left. Carries the
            stock level observed right after the failed update.
        NotFound: the product or variant doesn't exist.
    """
    if quantity < 1:
        raise ValueError("Quantity must be at least 1.")

    model, criteria = _target(product_id, variant_id)
    result = db.session.execute(
        sa.update(model)
        .where(*criteria, model.stock >= quantity)
        .values(stock=model.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    current = available(product_id, variant_id)
    if current is None:
        raise NotFound(
            "Product variant not found." if variant_id else "Product not found.",
            product_id=product_id,
            variant_id=variant_id,
        )
    logger.warning(
        f"Stock reservation refused for product {product_id} "
        f"variant {variant_id}: requested {quantity}, available {current}"
    )
    raise InsufficientStock(
        f"Insufficient stock. Only {current} left.",
        product_id=product_id,
        variant_id=variant_id,
        available_stock=current,
    )


def restore(product_id, variant_id, quantity):
    """Put `quantity` units back. Only for cancellation, refund, compensation."""
    model, criteria = _target(product_id, variant_id)
    result = db.session.execute(
        sa.update(model)
        .where(*criteria)
        .values(stock=model.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.error(
            f"Stock restore matched no row: product {product_id} "
            f"variant {variant_id} quantity {quantity}"
        )
        return False
    logger.info(
        f"Restored {quantity} units to product {product_id} variant {variant_id}"
    )
    return True
