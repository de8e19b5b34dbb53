"""Order notification jobs, run by the task queue.

Each job takes an order id (not an ORM object) because it may run on the
worker thread, in a different session from the request that queued it.
"""

import logging

from flask import current_app

from marketplace.extensions import db
from marketplace.models.order import Order
from marketplace.services.email_service import send_email

logger = logging.getLogger(__name__)


def _load(order_id):
    order = db.session.get(Order, order_id)
    if order is None:
        logger.warning(f"Notification skipped: order {order_id} not found")
        return None, None
    customer = order.customer
    if customer is None or not customer.email:
        logger.warning(f"Notification skipped: order {order_id} has no customer email")
        return order, None
    return order, customer


def send_order_confirmation(order_id):
    order, customer = _load(order_id)
    if customer is None:
        return False
    return send_email(
        to=customer.email,
        subject=f"Order confirmed: {order.invoice_number}",
        template="emails/order_confirmation.html",
        context={
            "store_name": current_app.config["STORE_NAME"],
            "customer_name": customer.full_name or "",
            "order": order,
        },
    )


def send_order_cancelled(order_id):
    order, customer = _load(order_id)
    if customer is None:
        return False
    return send_email(
        to=customer.email,
        subject=f"Order cancelled: {order.invoice_number}",
        template="emails/order_cancelled.html",
        context={
            "store_name": current_app.config["STORE_NAME"],
            "customer_name": customer.full_name or "",
            "order": order,
        },
    )
