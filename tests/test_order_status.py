"""Tests for the order status machine, cancellation and refunds.

Covers:
- Transition graph, terminal states and same-status no-ops
- Payment status never moves backwards
- Shipping details, delivery approving commissions
- Cancellation restoring stock (unless shipped) and reversing commissions
- Refund on cancel of a paid order; refund failure and retry
- Who may change status: admin, sellers on the order, never customers
- Customer cancellation and admin refund endpoints
"""

from decimal import Decimal
from unittest.mock import patch

import pytest
import sqlalchemy as sa
import stripe

from conftest import address, login, payment_proof, stripe_charge
from marketplace.errors import InvalidTransition, NotFound, ValidationError
from marketplace.extensions import db
from marketplace.models.commission import Commission
from marketplace.models.order import (
    Order,
    OrderStatus,
    OrderStatusEvent,
    PaymentStatus,
    can_advance_payment,
    next_status,
)
from marketplace.models.product import Product
from marketplace.models.user import User
from marketplace.services import order_service


def _stock(product_id):
    return db.session.execute(
        sa.select(Product.stock).where(Product.id == product_id)
    ).scalar_one()


def _cod_order(seed_data, quantity=2):
    result = order_service.create_order(
        customer_id=seed_data["customer_id"],
        line_items=[{"product_id": seed_data["tee_id"], "quantity": quantity}],
        shipping_address=address(),
        payment_method="cod",
    )
    return result.order.id


def _paid_order(seed_data):
    with patch("marketplace.services.payment_service.stripe.Charge.retrieve",
               return_value=stripe_charge(100000)):
        result = order_service.create_order(
            customer_id=seed_data["customer_id"],
            line_items=[{"product_id": seed_data["tee_id"], "quantity": 2}],
            shipping_address=address(),
            payment_method="card",
            payment_proof=payment_proof(),
        )
    return result.order.id


def _advance(order_id, *statuses):
    for status in statuses:
        order_service.update_status(order_id, status)


def _commission_statuses(order_id):
    return [c.status for c in Commission.query.filter_by(order_id=order_id).all()]


class TestTransitionGraph:
    """Tests for next_status() and can_advance_payment()."""

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "processing"),
            ("pending", "canceled"),
            ("processing", "shipped"),
            ("processing", "canceled"),
            ("shipped", "delivered"),
            ("shipped", "canceled"),
            ("delivered", "refunded"),
        ],
    )
    def test_allowed(self, current, target):
        assert next_status(current, target) == OrderStatus(target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "shipped"),
            ("pending", "delivered"),
            ("processing", "pending"),
            ("delivered", "canceled"),
            ("shipped", "refunded"),
            ("pending", "lost"),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransition):
            next_status(current, target)

    def test_same_status_is_noop(self):
        assert next_status("processing", "processing") is None

    @pytest.mark.parametrize("terminal", ["canceled", "refunded"])
    def test_terminal_rejects_everything(self, terminal):
        with pytest.raises(InvalidTransition) as exc:
            next_status(terminal, terminal)
        assert "none (terminal state)" in exc.value.message
        assert exc.value.extra["allowed"] == []

    def test_error_lists_allowed_targets(self):
        with pytest.raises(InvalidTransition) as exc:
            next_status("pending", "delivered")
        assert exc.value.extra["current"] == "pending"
        assert exc.value.extra["allowed"] == ["processing", "canceled"]

    def test_payment_status_only_moves_forward(self):
        assert can_advance_payment("pending", "paid")
        assert can_advance_payment("pending", "failed")
        assert can_advance_payment("failed", "paid")
        assert can_advance_payment("paid", "refunded")
        assert not can_advance_payment("paid", "failed")
        assert not can_advance_payment("paid", "pending")
        assert not can_advance_payment("pending", "refunded")
        assert not can_advance_payment("refunded", "paid")


class TestUpdateStatus:
    """Tests for order_service.update_status()."""

    def test_missing_order(self, seed_data):
        with pytest.raises(NotFound):
            order_service.update_status("nope", "processing")

    def test_records_history(self, seed_data):
        order_id = _cod_order(seed_data)
        _advance(order_id, "processing")

        events = OrderStatusEvent.query.filter_by(order_id=order_id).all()
        assert sorted(e.status for e in events) == ["pending", "processing"]

    def test_same_status_changes_nothing(self, seed_data):
        order_id = _cod_order(seed_data)
        order = order_service.update_status(order_id, "pending")
        assert order.status == "pending"
        assert OrderStatusEvent.query.filter_by(order_id=order_id).count() == 1

    def test_shipping_records_tracking(self, seed_data):
        order_id = _cod_order(seed_data)
        _advance(order_id, "processing")
        order = order_service.update_status(
            order_id,
            "shipped",
            tracking={
                "tracking_number": "TRK123",
                "carrier": "BlueDart",
                "estimated_delivery": "2026-11-01T10:00:00+00:00",
            },
        )
        assert order.status == "shipped"
        assert order.tracking_number == "TRK123"
        assert order.carrier == "BlueDart"
        assert order.shipped_at is not None
        assert order.estimated_delivery is not None

    def test_invalid_estimated_delivery(self, seed_data):
        order_id = _cod_order(seed_data)
        _advance(order_id, "processing")
        with pytest.raises(ValidationError):
            order_service.update_status(
                order_id, "shipped", tracking={"estimated_delivery": "next week"}
            )
        assert db.session.get(Order, order_id).shipped_at is None

    def test_delivery_approves_commissions(self, seed_data):
        order_id = _cod_order(seed_data)
        _advance(order_id, "processing", "shipped", "delivered")

        order = db.session.get(Order, order_id)
        assert order.delivered_at is not None
        assert _commission_statuses(order_id) == ["approved"]

    def test_terminal_order_cannot_move(self, seed_data):
        order_id = _cod_order(seed_data)
        _advance(order_id, "canceled")
        with pytest.raises(InvalidTransition):
            order_service.update_status(order_id, "processing")
        with pytest.raises(InvalidTransition):
            order_service.update_status(order_id, "canceled")


class TestCancellation:
    """Canceling returns stock and reverses seller earnings."""

    @patch("marketplace.services.payment_service.stripe.Refund.create")
    def test_cancel_unpaid_restores_stock(self, mock_refund, seed_data):
        order_id = _cod_order(seed_data)
        assert _stock(seed_data["tee_id"]) == 8

        order = order_service.update_status(order_id, "canceled", notes="Changed mind")

        assert order.status == "canceled"
        assert order.cancelled_at is not None
        assert order.cancellation_reason == "Changed mind"
        assert _stock(seed_data["tee_id"]) == 10
        assert _commission_statuses(order_id) == ["cancelled"]
        designer = db.session.get(User, seed_data["designer_id"])
        db.session.refresh(designer)
        assert Decimal(str(designer.total_earnings)) == Decimal("0")
        mock_refund.assert_not_called()

    def test_cancel_after_shipping_keeps_stock(self, seed_data):
        order_id = _cod_order(seed_data)
        _advance(order_id, "processing", "shipped", "canceled")
        assert _stock(seed_data["tee_id"]) == 8

    @patch("marketplace.services.notification_service.send_email")
    def test_cancel_queues_email(self, mock_send, seed_data):
        order_id = _cod_order(seed_data)
        mock_send.reset_mock()

        order_service.update_status(order_id, "canceled")

        mock_send.assert_called_once()
        assert mock_send.call_args.kwargs["template"] == "emails/order_cancelled.html"

    @patch("marketplace.services.payment_service.stripe.Refund.create")
    def test_cancel_paid_order_refunds(self, mock_refund, seed_data):
        mock_refund.return_value = {"id": "re_test_1"}
        order_id = _paid_order(seed_data)

        order = order_service.update_status(order_id, "canceled", notes="Out of ink")

        assert order.status == "canceled"
        assert order.payment_status == "refunded"
        assert order.refund_id == "re_test_1"
        mock_refund.assert_called_once_with(
            charge="ch_test_123", amount=100000, metadata={"reason": "Out of ink"}
        )

    @patch("marketplace.services.payment_service.stripe.Refund.create")
    def test_refund_failure_still_cancels(self, mock_refund, seed_data):
        mock_refund.side_effect = stripe.APIConnectionError("gateway down")
        order_id = _paid_order(seed_data)

        order = order_service.update_status(order_id, "canceled")

        assert order.status == "canceled"
        assert order.payment_status == "paid"
        assert order.refund_id is None
        assert _stock(seed_data["tee_id"]) == 10

    @patch("marketplace.services.payment_service.stripe.Refund.create")
    def test_retry_pending_refunds(self, mock_refund, seed_data):
        mock_refund.side_effect = stripe.APIConnectionError("gateway down")
        order_id = _paid_order(seed_data)
        order_service.update_status(order_id, "canceled")

        assert order_service.retry_pending_refunds(dry_run=True) == {
            "found": 1, "refunded": 0, "failed": 0,
        }

        mock_refund.side_effect = None
        mock_refund.return_value = {"id": "re_retry_1"}
        summary = order_service.retry_pending_refunds()

        assert summary == {"found": 1, "refunded": 1, "failed": 0}
        order = db.session.get(Order, order_id)
        assert order.payment_status == "refunded"
        assert order.refund_id == "re_retry_1"
        assert order_service.retry_pending_refunds()["found"] == 0


class TestStatusEndpoint:
    """PATCH /orders/<id>/status permissions."""

    def test_seller_on_order_can_ship(self, client, seed_data):
        order_id = _cod_order(seed_data)
        login(client, seed_data["designer_email"])

        resp = client.patch(f"/orders/{order_id}/status", json={"status": "processing"})
        assert resp.status_code == 200
        resp = client.patch(f"/orders/{order_id}/status", json={
            "status": "shipped",
            "tracking": {"tracking_number": "TRK1", "carrier": "DTDC"},
        })
        assert resp.status_code == 200
        assert resp.get_json()["order"]["tracking_number"] == "TRK1"

    def test_seller_cannot_refund(self, client, seed_data):
        order_id = _cod_order(seed_data)
        _advance(order_id, "processing", "shipped", "delivered")
        login(client, seed_data["designer_email"])

        resp = client.patch(f"/orders/{order_id}/status", json={"status": "refunded"})
        assert resp.status_code == 403
        assert db.session.get(Order, order_id).status == "delivered"

    def test_customer_cannot_change_status(self, client, seed_data):
        order_id = _cod_order(seed_data)
        login(client, seed_data["customer_email"])

        resp = client.patch(f"/orders/{order_id}/status", json={"status": "processing"})
        assert resp.status_code == 403

    def test_invalid_transition_returns_400(self, client, seed_data):
        order_id = _cod_order(seed_data)
        login(client, seed_data["admin_email"])

        resp = client.patch(f"/orders/{order_id}/status", json={"status": "delivered"})
        assert resp.status_code == 400
        data = resp.get_json()
        assert data["error"] == "InvalidTransition"
        assert data["current"] == "pending"
        assert data["allowed"] == ["processing", "canceled"]

    def test_missing_status(self, client, seed_data):
        order_id = _cod_order(seed_data)
        login(client, seed_data["admin_email"])
        resp = client.patch(f"/orders/{order_id}/status", json={})
        assert resp.status_code == 400

    def test_seller_not_on_order_forbidden(self, client, seed_data):
        order_id = _cod_order(seed_data)
        outsider = User(
            email="seller2@marketplace.test",
            password_hash=db.session.get(User, seed_data["designer_id"]).password_hash,
            role="seller",
        )
        db.session.add(outsider)
        db.session.commit()
        login(client, "seller2@marketplace.test")

        resp = client.patch(f"/orders/{order_id}/status", json={"status": "processing"})
        assert resp.status_code == 403


class TestCustomerCancel:
    """POST /orders/<id>/cancel."""

    def test_owner_cancels_pending_order(self, client, seed_data):
        order_id = _cod_order(seed_data)
        login(client, seed_data["customer_email"])

        resp = client.post(f"/orders/{order_id}/cancel", json={"reason": "Ordered twice"})

        assert resp.status_code == 200
        order = resp.get_json()["order"]
        assert order["status"] == "canceled"
        assert order["cancellation_reason"] == "Ordered twice"
        assert _stock(seed_data["tee_id"]) == 10

    def test_default_reason(self, client, seed_data):
        order_id = _cod_order(seed_data)
        login(client, seed_data["customer_email"])
        resp = client.post(f"/orders/{order_id}/cancel")
        assert resp.get_json()["order"]["cancellation_reason"] == "Cancelled by customer"

    def test_other_customer_forbidden(self, client, seed_data):
        order_id = _cod_order(seed_data)
        login(client, seed_data["other_email"])
        resp = client.post(f"/orders/{order_id}/cancel")
        assert resp.status_code == 403
        assert db.session.get(Order, order_id).status == "pending"

    def test_cannot_cancel_after_shipping(self, client, seed_data):
        order_id = _cod_order(seed_data)
        _advance(order_id, "processing", "shipped")
        login(client, seed_data["customer_email"])

        resp = client.post(f"/orders/{order_id}/cancel")
        assert resp.status_code == 400
        assert resp.get_json()["current"] == "shipped"


class TestAdminRefund:
    """POST /payments/refund."""

    @patch("marketplace.services.payment_service.stripe.Refund.create")
    def test_refund_delivered_order(self, mock_refund, client, seed_data):
        mock_refund.return_value = {"id": "re_admin_1"}
        order_id = _paid_order(seed_data)
        _advance(order_id, "shipped", "delivered")
        login(client, seed_data["admin_email"])

        resp = client.post("/payments/refund", json={
            "order_id": order_id, "reason": "Damaged in transit",
        })

        assert resp.status_code == 200
        order = resp.get_json()["order"]
        assert order["status"] == "refunded"
        assert order["refund_id"] == "re_admin_1"
        assert _commission_statuses(order_id) == ["cancelled"]
        # Delivered goods are not back in stock
        assert _stock(seed_data["tee_id"]) == 8

    @patch("marketplace.services.payment_service.stripe.Refund.create")
    def test_refund_processing_order_cancels_it(self, mock_refund, client, seed_data):
        mock_refund.return_value = {"id": "re_admin_2"}
        order_id = _paid_order(seed_data)
        login(client, seed_data["admin_email"])

        resp = client.post("/payments/refund", json={"order_id": order_id})

        assert resp.status_code == 200
        assert resp.get_json()["order"]["status"] == "canceled"
        assert resp.get_json()["order"]["refund_id"] == "re_admin_2"

    @patch("marketplace.services.payment_service.stripe.Refund.create")
    def test_gateway_refusal_returns_502(self, mock_refund, client, seed_data):
        mock_refund.side_effect = stripe.InvalidRequestError("Charge already refunded", "charge")
        order_id = _paid_order(seed_data)
        login(client, seed_data["admin_email"])

        resp = client.post("/payments/refund", json={"order_id": order_id})

        assert resp.status_code == 502
        assert resp.get_json()["error"] == "RefundFailed"
        assert db.session.get(Order, order_id).status == "canceled"

    def test_unpaid_order_rejected(self, client, seed_data):
        order_id = _cod_order(seed_data)
        login(client, seed_data["admin_email"])
        resp = client.post("/payments/refund", json={"order_id": order_id})
        assert resp.status_code == 400
        assert db.session.get(Order, order_id).payment_status == PaymentStatus.PENDING.value

    def test_non_admin_forbidden(self, client, seed_data):
        order_id = _paid_order(seed_data)
        login(client, seed_data["customer_email"])
        resp = client.post("/payments/refund", json={"order_id": order_id})
        assert resp.status_code == 403
