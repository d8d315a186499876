"""Credits blueprint — /api/ai/credits

Returns the signed-in user's generation credit balance, creating it with
NEW_USER_FREE_CREDITS on first access.
"""

import logging

from flask import Blueprint, current_app, jsonify
from flask_login import current_user, login_required

from app.extensions import db
from app.services import credit_service

logger = logging.getLogger(__name__)

credits_bp = Blueprint("credits", __name__, url_prefix="/api/ai")


@credits_bp.route("/credits", methods=["GET"])
@login_required
def get_credits():
    credits = credit_service.get_user_credits(current_user.id)

    if credits is None:
        credits = credit_service.initialize_user_credits(
            current_user.id,
            initial_credits=current_app.config["NEW_USER_FREE_CREDITS"],
        )
        db.session.commit()

    return jsonify(credit_service.credits_to_dict(credits))
