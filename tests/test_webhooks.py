"""Tests for the payments webhook and exactly-once event processing.

Covers:
- Webhook signature verification (missing, invalid)
- Replay protection keyed on (event id, entity id)
- charge.succeeded / charge.failed / payment_intent.* handlers
- Payment status never moves backwards
- Unknown event types and unknown orders (acknowledged, recorded)
- Handler failures (acknowledged, recorded as failed)
- Purging expired replay records
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from conftest import address
from marketplace.extensions import db
from marketplace.models.audit import AuditEvent
from marketplace.models.order import Order, OrderStatusEvent
from marketplace.models.webhook_event import WebhookEvent
from marketplace.services import order_service
from marketplace.services.webhook_service import process_if_new, purge_expired

CONSTRUCT_EVENT = "marketplace.services.webhook_service.stripe.Webhook.construct_event"


def _event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _charge(charge_id="ch_hook_1", intent_id="pi_hook_1", **extra):
    return dict({"id": charge_id, "object": "charge", "payment_intent": intent_id}, **extra)


def _post(client, mock_construct, event):
    mock_construct.return_value = event
    return client.post(
        "/payments/webhook",
        data=json.dumps(event),
        content_type="application/json",
        headers={"Stripe-Signature": "valid_sig"},
    )


def _awaiting_payment(seed_data, intent_id="pi_hook_1"):
    """A pending order whose payment will be confirmed by the gateway."""
    order_id = order_service.create_order(
        customer_id=seed_data["customer_id"],
        line_items=[{"product_id": seed_data["tee_id"], "quantity": 1}],
        shipping_address=address(),
        payment_method="cod",
    ).order.id
    order = db.session.get(Order, order_id)
    order.gateway_order_id = intent_id
    db.session.commit()
    return order_id


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client, seed_data):
        resp = client.post(
            "/payments/webhook",
            data="{}",
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Missing signature"

    @patch(CONSTRUCT_EVENT)
    def test_invalid_signature_returns_400(self, mock_construct, client, seed_data):
        mock_construct.side_effect = Exception("No signatures found")

        resp = client.post(
            "/payments/webhook",
            data="{}",
            content_type="application/json",
            headers={"Stripe-Signature": "bad_sig"},
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid signature"
        assert WebhookEvent.query.count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_verifies_against_raw_body(self, mock_construct, client, seed_data):
        event = _event("evt_raw", "customer.created", {"id": "cus_1"})
        _post(client, mock_construct, event)
        payload, sig, secret = mock_construct.call_args.args
        assert json.loads(payload) == event
        assert sig == "valid_sig"
        assert secret == "whsec_test_fake"


class TestCaptureEvents:
    """charge.succeeded and payment_intent.succeeded."""

    @patch(CONSTRUCT_EVENT)
    def test_charge_succeeded_marks_order_paid(self, mock_construct, client, seed_data):
        order_id = _awaiting_payment(seed_data)

        resp = _post(client, mock_construct, _event(
            "evt_cap_1", "charge.succeeded", _charge()
        ))

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "processed"

        order = db.session.get(Order, order_id)
        assert order.payment_status == "paid"
        assert order.status == "processing"
        assert order.payment_id == "ch_hook_1"

        claim = WebhookEvent.query.filter_by(event_id="evt_cap_1").one()
        assert claim.entity_id == "ch_hook_1"
        assert claim.order_id == order_id
        assert claim.outcome == "processed"
        assert AuditEvent.query.filter_by(
            order_id=order_id, action="webhook.processed"
        ).count() == 1

    @patch(CONSTRUCT_EVENT)
    def test_replay_is_applied_once(self, mock_construct, client, seed_data):
        order_id = _awaiting_payment(seed_data)
        event = _event("evt_cap_2", "charge.succeeded", _charge())

        first = _post(client, mock_construct, event)
        second = _post(client, mock_construct, event)

        assert first.get_json()["status"] == "processed"
        assert second.status_code == 200
        assert second.get_json()["status"] == "already_processed"
        assert WebhookEvent.query.count() == 1
        statuses = sorted(
            e.status for e in OrderStatusEvent.query.filter_by(order_id=order_id)
        )
        assert statuses == ["pending", "processing"]

    @patch(CONSTRUCT_EVENT)
    def test_same_event_other_entity_is_processed(self, mock_construct, client, seed_data):
        _awaiting_payment(seed_data, "pi_a")
        _awaiting_payment(seed_data, "pi_b")

        _post(client, mock_construct, _event(
            "evt_multi", "charge.succeeded", _charge("ch_a", "pi_a")
        ))
        resp = _post(client, mock_construct, _event(
            "evt_multi", "charge.succeeded", _charge("ch_b", "pi_b")
        ))

        assert resp.get_json()["status"] == "processed"
        assert WebhookEvent.query.filter_by(event_id="evt_multi").count() == 2
        assert Order.query.filter_by(payment_status="paid").count() == 2

    @patch(CONSTRUCT_EVENT)
    def test_payment_intent_succeeded(self, mock_construct, client, seed_data):
        order_id = _awaiting_payment(seed_data, "pi_intent")

        _post(client, mock_construct, _event(
            "evt_pi_1",
            "payment_intent.succeeded",
            {"id": "pi_intent", "object": "payment_intent", "latest_charge": "ch_latest"},
        ))

        order = db.session.get(Order, order_id)
        assert order.payment_status == "paid"
        assert order.payment_id == "ch_latest"

    @patch(CONSTRUCT_EVENT)
    def test_capture_after_cancel_leaves_status(self, mock_construct, client, seed_data):
        order_id = _awaiting_payment(seed_data)
        order_service.update_status(order_id, "canceled")

        _post(client, mock_construct, _event("evt_late", "charge.succeeded", _charge()))

        order = db.session.get(Order, order_id)
        assert order.status == "canceled"
        assert order.payment_status == "paid"
        # Picked up by the refund retry job
        assert order_service.retry_pending_refunds(dry_run=True)["found"] == 1


class TestFailureEvents:
    """charge.failed and payment_intent.payment_failed."""

    @patch(CONSTRUCT_EVENT)
    def test_charge_failed_marks_pending_order_failed(self, mock_construct, client,
                                                       seed_data):
        order_id = _awaiting_payment(seed_data)

        _post(client, mock_construct, _event(
            "evt_fail_1", "charge.failed",
            _charge(failure_message="Your card was declined."),
        ))

        order = db.session.get(Order, order_id)
        assert order.payment_status == "failed"
        assert order.status == "pending"
        audit = AuditEvent.query.filter_by(
            order_id=order_id, action="order.payment_failed"
        ).one()
        assert audit.metadata_["reason"] == "Your card was declined."

    @patch(CONSTRUCT_EVENT)
    def test_retry_after_failure_can_succeed(self, mock_construct, client, seed_data):
        order_id = _awaiting_payment(seed_data)
        _post(client, mock_construct, _event("evt_f", "charge.failed", _charge("ch_x")))
        _post(client, mock_construct, _event("evt_s", "charge.succeeded", _charge("ch_y")))

        order = db.session.get(Order, order_id)
        assert order.payment_status == "paid"
        assert order.payment_id == "ch_y"

    @patch(CONSTRUCT_EVENT)
    def test_failure_never_downgrades_paid(self, mock_construct, client, seed_data):
        order_id = _awaiting_payment(seed_data)
        _post(client, mock_construct, _event("evt_ok", "charge.succeeded", _charge()))
        _post(client, mock_construct, _event(
            "evt_late_fail", "payment_intent.payment_failed",
            {"id": "pi_hook_1", "last_payment_error": {"message": "expired"}},
        ))

        assert db.session.get(Order, order_id).payment_status == "paid"


class TestUnhandledEvents:
    """Events that don't change anything are still acknowledged and recorded."""

    @patch(CONSTRUCT_EVENT)
    def test_unknown_event_type(self, mock_construct, client, seed_data):
        resp = _post(client, mock_construct, _event(
            "evt_unknown", "customer.created", {"id": "cus_123"}
        ))
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ignored"
        claim = WebhookEvent.query.filter_by(event_id="evt_unknown").one()
        assert claim.outcome == "ignored"

    @patch(CONSTRUCT_EVENT)
    def test_unknown_order(self, mock_construct, client, seed_data):
        resp = _post(client, mock_construct, _event(
            "evt_orphan", "charge.succeeded", _charge("ch_orphan", "pi_orphan")
        ))
        assert resp.get_json()["status"] == "ignored"
        assert WebhookEvent.query.filter_by(event_id="evt_orphan").one().order_id is None

    @patch("marketplace.services.webhook_service.order_service.mark_payment_captured")
    @patch(CONSTRUCT_EVENT)
    def test_handler_failure_is_recorded(self, mock_construct, mock_capture, client,
                                         seed_data):
        mock_capture.side_effect = RuntimeError("database hiccup")
        order_id = _awaiting_payment(seed_data)
        event = _event("evt_boom", "charge.succeeded", _charge())

        resp = _post(client, mock_construct, event)

        assert resp.status_code == 200
        claim = WebhookEvent.query.filter_by(event_id="evt_boom").one()
        assert claim.outcome == "failed"
        assert "database hiccup" in claim.error
        assert db.session.get(Order, order_id).payment_status == "pending"

        # The gateway's retry is acknowledged without re-running the handler
        replay = _post(client, mock_construct, event)
        assert replay.get_json()["status"] == "already_processed"
        assert mock_capture.call_count == 1


class TestReplayGuard:
    """process_if_new() and purge_expired() directly."""

    def test_handler_runs_once(self, seed_data):
        calls = []

        def handler():
            calls.append(1)
            return None

        assert process_if_new("evt_1", "ent_1", "test.event", handler) == (True, None)
        assert process_if_new("evt_1", "ent_1", "test.event", handler) == (False, None)
        assert len(calls) == 1

    def test_replay_returns_recorded_order(self, seed_data):
        process_if_new("evt_2", "ent_2", "test.event", lambda: "order-123")
        assert process_if_new("evt_2", "ent_2", "test.event", lambda: None) == (
            False, "order-123"
        )

    def test_purge_expired(self, seed_data):
        old = WebhookEvent(
            event_id="evt_old",
            entity_id="ch_old",
            event_type="charge.succeeded",
            outcome="processed",
            processed_at=datetime.now(timezone.utc) - timedelta(days=40),
        )
        recent = WebhookEvent(
            event_id="evt_recent",
            entity_id="ch_recent",
            event_type="charge.succeeded",
            outcome="processed",
            processed_at=datetime.now(timezone.utc) - timedelta(days=2),
        )
        db.session.add_all([old, recent])
        db.session.commit()

        assert purge_expired() == 1
        assert [e.event_id for e in WebhookEvent.query.all()] == ["evt_recent"]
        assert purge_expired(retention_days=1) == 1
        assert WebhookEvent.query.count() == 0

    def test_purge_cli(self, app, seed_data):
        db.session.add(WebhookEvent(
            event_id="evt_cli",
            entity_id="ch_cli",
            event_type="charge.succeeded",
            processed_at=datetime.now(timezone.utc) - timedelta(days=10),
        ))
        db.session.commit()

        result = app.test_cli_runner().invoke(args=["purge-webhook-events", "--days", "7"])

        assert result.exit_code == 0
        assert "Purged 1 webhook events." in result.output
