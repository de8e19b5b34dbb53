"""Idempotency guard for order creation.

Keys are scoped to the customer: UNIQUE(user_id, idempotency_key) on orders
is the serialization point, and another customer's key never matches.
lookup() short-circuits replays before any work; a racer that loses the
insert catches IntegrityError and resolves the winner with lookup() again.
"""

from marketplace.errors import ValidationError
from marketplace.extensions import db
from marketplace.models.order import Order

HEADER = "Idempotency-Key"
BODY_FIELDS = ("idempotency_key", "idempotencyKey")
MAX_KEY_LENGTH = 255


def resolve_key(headers, body):
    """Header first, then body. Blank values count as absent."""
    key = headers.get(HEADER)
    if not key and isinstance(body, dict):
        for field in BODY_FIELDS:
            if body.get(field):
                key = body[field]
                break
    if key is None:
        return None
    key = str(key).strip()
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency key must be at most {MAX_KEY_LENGTH} characters."
        )
    return key or None


def lookup(key, customer_id):
    """Return the order this customer previously created with this key, or None."""
    if not key:
        return None
    return db.session.execute(
        db.select(Order).where(
            Order.user_id == customer_id,
            Order.idempotency_key == key,
        )
    ).scalar_one_or_none()
