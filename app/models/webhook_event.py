"""Webhook event model (idempotency ledger).

Every reconciled webhook event is recorded by (event_id, provider). The
unique constraint is what serialises concurrent deliveries of the same event:
the second insert fails and that delivery is treated as already processed.
Rows are append-only.
"""

import uuid

from app.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint(
            "event_id", "provider", name="uq_webhook_events_event_provider"
        ),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(db.String(255), nullable=False)  # e.g. "evt_1Abc..."
    provider = db.Column(db.String(50), nullable=False, default="creem", index=True)
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.completed"
    payload = db.Column(db.Text, nullable=True)  # raw body, for audit/debugging
    processed = db.Column(db.Boolean, nullable=False, default=True)
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<WebhookEvent {self.provider}:{self.event_id} ({self.event_type})>"
