"""Billing models.

- Subscription: provider subscription state, synced from webhooks.
  Upserted by subscription_id (the provider's natural key); never deleted
  by the reconciler, cancellation is a status transition.
- Payment: one row per provider payment/transaction, upserted by payment_id.
"""

import uuid

from app.extensions import db


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    # -- Valid statuses (normalised from the provider) --
    STATUSES = [
        "active",
        "trialing",
        "past_due",
        "unpaid",
        "canceled",
        "incomplete",
    ]
    ACTIVE_STATUSES = ("active", "trialing")

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_id = db.Column(db.String(255), nullable=False, index=True)
    subscription_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "sub_..."
    product_id = db.Column(db.String(255), nullable=True)  # tier id, raw provider product id, or unknown
    status = db.Column(db.String(50), nullable=False)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="subscriptions")

    @property
    def is_active(self):
        return self.status in self.ACTIVE_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "customerId": self.customer_id,
            "subscriptionId": self.subscription_id,
            "tierId": self.product_id,
            "status": self.status,
            "currentPeriodStart": _iso(self.current_period_start),
            "currentPeriodEnd": _iso(self.current_period_end),
            "canceledAt": _iso(self.canceled_at),
        }

    def __repr__(self):
        return f"<Subscription {self.subscription_id} ({self.status})>"


class Payment(db.Model):
    __tablename__ = "payments"

    STATUSES = ["pending", "succeeded", "failed", "canceled"]
    PAYMENT_TYPES = ["subscription", "one_time"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_id = db.Column(db.String(255), nullable=False)
    subscription_id = db.Column(db.String(255), nullable=True)  # null for one-time purchases
    product_id = db.Column(db.String(255), nullable=False)
    payment_id = db.Column(db.String(255), unique=True, nullable=False)
    amount = db.Column(db.Integer, nullable=False)  # minor currency units
    currency = db.Column(db.String(10), nullable=False, default="usd")
    status = db.Column(db.String(50), nullable=False)
    payment_type = db.Column(db.String(50), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="payments")

    def to_dict(self):
        return {
            "id": self.id,
            "paymentId": self.payment_id,
            "subscriptionId": self.subscription_id,
            "tierId": self.product_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "paymentType": self.payment_type,
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Payment {self.payment_id} {self.amount} {self.currency} ({self.status})>"


def _iso(value):
    return value.isoformat() if value else None
