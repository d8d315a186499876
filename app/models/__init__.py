# Models package: import all models here so Alembic can discover them.

from app.models.user import User  # noqa: F401
from app.models.billing import Subscription, Payment  # noqa: F401
from app.models.webhook_event import WebhookEvent  # noqa: F401
from app.models.credits import UserCredits  # noqa: F401
