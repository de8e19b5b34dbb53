"""Webhook event model (replay-protection table).

Every gateway callback is claimed by its (event id, entity id) pair before
any handler runs. The unique constraint is the only serialization point: a
second insert of the same pair fails and the retry is acknowledged without
re-applying side effects. Rows are purged after WEBHOOK_EVENT_RETENTION_DAYS.
"""

import uuid

from marketplace.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    # -- Valid outcomes --
    OUTCOMES = ["processed", "ignored", "failed"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(db.String(255), nullable=False)  # e.g. "evt_1Abc..."
    entity_id = db.Column(db.String(255), nullable=False)  # e.g. "ch_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "charge.succeeded"
    order_id = db.Column(db.String(36), nullable=True)
    outcome = db.Column(db.String(20), nullable=True)  # None while in flight
    error = db.Column(db.Text, nullable=True)
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), index=True
    )

    __table_args__ = (
        db.UniqueConstraint(
            "event_id", "entity_id", name="uq_webhook_events_event_entity"
        ),
    )

    def __repr__(self):
        return f"<WebhookEvent {self.event_id} ({self.event_type}) {self.outcome}>"
