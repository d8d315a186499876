"""Credit service — per-user generation credit balances.

Purchases (via webhook reconciliation) add credits; the AI generation flow
deducts them and refunds on failed generations. Balance changes are single
UPDATE statements so concurrent requests cannot lose writes, and deductions
are guarded in the WHERE clause so the balance never goes negative.

Like the billing repository, nothing here commits.
"""

import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.errors import InsufficientCredits
from app.extensions import db
from app.models.credits import UserCredits

logger = logging.getLogger(__name__)


def get_user_credits(user_id, session=None):
    session = session if session is not None else db.session
    return session.query(UserCredits).filter_by(user_id=user_id).first()


def initialize_user_credits(user_id, initial_credits=3, session=None):
    """Create the balance row once. Returns the existing row if present.

    Safe against two first requests racing: the loser's insert hits the
    unique user_id constraint, is rolled back, and the winner's row is read.
    Call this before any other write in the transaction.
    """
    session = session if session is not None else db.session

    existing = get_user_credits(user_id, session=session)
    if existing:
        return existing

    credits = UserCredits(
        user_id=user_id,
        total_credits=initial_credits,
        used_credits=0,
        remaining_credits=initial_credits,
    )
    session.add(credits)
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        logger.info(f"Credits for user {user_id} initialised concurrently")
        return get_user_credits(user_id, session=session)

    logger.info(f"Initialised {initial_credits} credits for user {user_id}")
    return credits


def add_credits(user_id, amount, session=None):
    """Add credits to a user's balance, creating the row if needed."""
    session = session if session is not None else db.session

    if amount <= 0:
        raise ValueError("amount must be positive")

    result = session.execute(
        update(UserCredits)
        .where(UserCredits.user_id == user_id)
        .values(
            total_credits=UserCredits.total_credits + amount,
            remaining_credits=UserCredits.remaining_credits + amount,
            updated_at=db.func.now(),
        )
    )
    if result.rowcount == 0:
        session.add(UserCredits(
            user_id=user_id,
            total_credits=amount,
            used_credits=0,
            remaining_credits=amount,
        ))
    session.flush()
    session.expire_all()
    return get_user_credits(user_id, session=session)


def deduct_credits(user_id, amount, session=None):
    """Consume credits. Raises InsufficientCredits if the balance is too low."""
    session = session if session is not None else db.session

    if amount <= 0:
        raise ValueError("amount must be positive")

    result = session.execute(
        update(UserCredits)
        .where(
            UserCredits.user_id == user_id,
            UserCredits.remaining_credits >= amount,
        )
        .values(
            used_credits=UserCredits.used_credits + amount,
            remaining_credits=UserCredits.remaining_credits - amount,
            updated_at=db.func.now(),
        )
    )
    if result.rowcount == 0:
        raise InsufficientCredits(
            f"User {user_id} does not have {amount} credit(s) available"
        )
    session.flush()
    session.expire_all()
    return get_user_credits(user_id, session=session)


def has_enough_credits(user_id, required, session=None):
    credits = get_user_credits(user_id, session=session)
    return credits is not None and credits.remaining_credits >= required


def credits_to_dict(credits):
    return {
        "totalCredits": credits.total_credits,
        "usedCredits": credits.used_credits,
        "remainingCredits": credits.remaining_credits,
        "lastResetAt": (
            credits.last_reset_at.isoformat() if credits.last_reset_at else None
        ),
    }
