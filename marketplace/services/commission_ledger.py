"""Commission ledger — seller commissions and the earnings counter.

Commission rows are written in the same unit of work as the order they
belong to. Seller earnings are only changed with a single atomic
UPDATE ... SET total_earnings = total_earnings + :amount.

Functions flush but do NOT commit; the caller commits.
"""

import logging
from collections import defaultdict
from decimal import Decimal

import sqlalchemy as sa

from marketplace.extensions import db
from marketplace.models.commission import Commission
from marketplace.models.user import User

logger = logging.getLogger(__name__)


def _adjust_earnings(seller_id, delta):
    db.session.execute(
        sa.update(User)
        .where(User.id == seller_id)
        .values(total_earnings=User.total_earnings + delta)
        .execution_options(synchronize_session=False)
    )


def record(order_id, entries):
    """Create one pending commission per entry and credit each seller.

    Args:
        order_id: Order UUID string.
        entries: iterable of dicts with seller_id, product_id, quantity,
            unit_price, commission_type, rate.

    Returns:
        List of Commission objects.
    """
    commissions = []
    totals = defaultdict(Decimal)

    for entry in entries:
        commission = Commission(
            order_id=order_id,
            seller_id=entry["seller_id"],
            product_id=entry["product_id"],
            quantity=entry["quantity"],
            unit_price=Decimal(str(entry["unit_price"])),
            commission_type=entry.get("commission_type") or "percentage",
            rate=Decimal(str(entry["rate"])),
            status="pending",
        )
        commission.recompute()
        db.session.add(commission)
        commissions.append(commission)
        totals[commission.seller_id] += commission.amount

    db.session.flush()

    for seller_id, amount in totals.items():
        if amount:
            _adjust_earnings(seller_id, amount)

    return commissions


def approve_for_order(order_id):
    """pending -> approved for every commission on a delivered order."""
    result = db.session.execute(
        sa.update(Commission)
        .where(Commission.order_id == order_id, Commission.status == "pending")
        .values(status="approved")
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Approved {result.rowcount} commissions for order {order_id}")
    return result.rowcount


def cancel_for_order(order_id):
    """pending/approved -> cancelled, reversing each seller's earnings.

    Commissions already paid out are left alone; reclaiming those is a
    manual payout adjustment.
    """
    commissions = (
        Commission.query
        .filter(
            Commission.order_id == order_id,
            Commission.status.in_(["pending", "approved"]),
        )
        .all()
    )

    totals = defaultdict(Decimal)
    for commission in commissions:
        commission.status = "cancelled"
        totals[commission.seller_id] += Decimal(str(commission.amount))
    db.session.flush()

    for seller_id, amount in totals.items():
        if amount:
            _adjust_earnings(seller_id, -amount)

    if commissions:
        logger.info(f"Cancelled {len(commissions)} commissions for order {order_id}")
    return len(commissions)


def list_for_order(order_id):
    return (
        Commission.query
        .filter_by(order_id=order_id)
        .order_by(Commission.created_at)
        .all()
    )
