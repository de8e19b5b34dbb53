"""Unit-of-work strategies for order creation.

An order, its stock reservations and its commission entries either all
land or none do. Two strategies share one interface, apply():

- AtomicUnitOfWork: one database transaction, rolled back on any failure.
- SequentialUnitOfWork: for connections that cannot hold a multi-statement
  transaction (AUTOCOMMIT, transaction-pooling proxies). Each step commits
  on its own; on failure every applied decrement is restored and the order
  is deleted.

select_unit_of_work() picks one from ORDER_TRANSACTION_MODE. In "auto" mode
the connection's capabilities are probed once per app and cached.
"""

import logging

import sqlalchemy as sa
from flask import current_app

from marketplace.errors import TransactionDegraded
from marketplace.extensions import db
from marketplace.models.commission import Commission
from marketplace.models.order import Order
from marketplace.services import commission_ledger, inventory_ledger

logger = logging.getLogger(__name__)

MODES = ("auto", "atomic", "sequential")


class AtomicUnitOfWork:
    degraded = False

    def apply(self, order, reservations, commission_entries):
        """Persist order + reservations + commissions in one transaction.

        Args:
            order: transient Order (with items) to insert.
            reservations: list of (product_id, variant_id, quantity).
            commission_entries: entries for commission_ledger.record().
        """
        try:
            db.session.add(order)
            db.session.flush()
            for product_id, variant_id, quantity in reservations:
                inventory_ledger.reserve(product_id, variant_id, quantity)
            commission_ledger.record(order.id, commission_entries)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return order


class SequentialUnitOfWork:
    degraded = True

    def apply(self, order, reservations, commission_entries):
        """Persist step by step, compensating everything on failure."""
        logger.warning(
            f"{TransactionDegraded.kind}: creating order {order.id or '(new)'} "
            f"without a multi-statement transaction"
        )
        try:
            db.session.add(order)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        order_id = order.id
        applied = []
        try:
            for product_id, variant_id, quantity in reservations:
                inventory_ledger.reserve(product_id, variant_id, quantity)
                db.session.commit()
                applied.append((product_id, variant_id, quantity))
            commission_ledger.record(order_id, commission_entries)
            db.session.commit()
        except Exception:
            db.session.rollback()
            self._compensate(order_id, applied)
            raise
        return order

    def _compensate(self, order_id, applied):
        try:
            for product_id, variant_id, quantity in reversed(applied):
                inventory_ledger.restore(product_id, variant_id, quantity)
                db.session.commit()
            db.session.execute(
                sa.delete(Commission).where(Commission.order_id == order_id)
            )
            order = db.session.get(Order, order_id)
            if order is not None:
                db.session.delete(order)
            db.session.commit()
            logger.warning(
                f"Compensated failed order {order_id}: restored "
                f"{len(applied)} reservations and removed the order"
            )
        except Exception as e:
            db.session.rollback()
            logger.error(
                f"Compensation failed for order {order_id} "
                f"(applied reservations: {applied}): {e}",
                exc_info=True,
            )


def supports_transactions():
    """True unless the session's connection runs in AUTOCOMMIT."""
    try:
        level = db.session.connection().get_isolation_level()
    except (sa.exc.SQLAlchemyError, NotImplementedError) as e:
        logger.warning(f"Could not determine transaction support: {e}")
        return False
    return str(level).upper() != "AUTOCOMMIT"


def select_unit_of_work():
    mode = current_app.config.get("ORDER_TRANSACTION_MODE", "auto")
    if mode not in MODES:
        raise ValueError(
            f"Invalid ORDER_TRANSACTION_MODE '{mode}'. Must be one of: {', '.join(MODES)}"
        )
    if mode == "atomic":
        return AtomicUnitOfWork()
    if mode == "sequential":
        return SequentialUnitOfWork()

    supported = current_app.extensions.get("order_transactions")
    if supported is None:
        supported = supports_transactions()
        current_app.extensions["order_transactions"] = supported
        if not supported:
            logger.warning(
                "Database connection cannot hold multi-statement transactions; "
                "orders will use sequential writes with compensation."
            )
    return AtomicUnitOfWork() if supported else SequentialUnitOfWork()
