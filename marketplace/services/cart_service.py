"""Cart service — the one cart operation the order pipeline needs."""

import logging

from marketplace.extensions import db
from marketplace.models.cart import CartItem

logger = logging.getLogger(__name__)


def clear_cart(user_id):
    """Empty a user's cart after a successful order. Commits.

    Returns the number of removed items.
    """
    count = CartItem.query.filter_by(user_id=user_id).delete(
        synchronize_session=False
    )
    db.session.commit()
    if count:
        logger.info(f"Cleared {count} cart items for user {user_id}")
    return count
