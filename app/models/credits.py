"""User credit balance.

One row per user, created once (insert-if-absent). Purchases add credits,
AI generations consume them.
"""

import uuid

from app.extensions import db


class UserCredits(db.Model):
    __tablename__ = "user_credits"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    total_credits = db.Column(db.Integer, nullable=False, default=0)
    used_credits = db.Column(db.Integer, nullable=False, default=0)
    remaining_credits = db.Column(db.Integer, nullable=False, default=0)
    last_reset_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="credits")

    def __repr__(self):
        return f"<UserCredits {self.user_id} {self.remaining_credits}/{self.total_credits}>"
