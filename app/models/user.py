"""User model.

Identity comes from the hosted auth collaborator; billing only needs the
provider customer reference, which checkout.completed webhooks fill in.
Flask-Login integration via UserMixin.
"""

import uuid

from flask_login import UserMixin

from app.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(255))
    role = db.Column(db.String(50), nullable=False, default="user")  # user | admin | super_admin
    payment_provider_customer_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # e.g. "cust_..." (set by checkout.completed)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    subscriptions = db.relationship(
        "Subscription", back_populates="user", lazy="dynamic"
    )
    payments = db.relationship("Payment", back_populates="user", lazy="dynamic")
    credits = db.relationship(
        "UserCredits", back_populates="user", uselist=False
    )

    def __repr__(self):
        return f"<User {self.email}>"
