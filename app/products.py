"""Product catalogue.

Maps our internal tier ids to Creem product ids per payment mode / billing
cycle, and records how many generation credits each purchase grants.
Subscriptions and payments store the tier id when the provider product is
known, the raw provider product id otherwise.
"""

PRODUCT_TIERS = [
    {
        "id": "credits_starter",
        "name": "Starter",
        "credits": 30,
        "currency": "USD",
        "prices": {"one_time": 1999, "monthly": 1999, "yearly": 1999},
        "creem": {
            "one_time": "prod_popular_30_credits",
            "monthly": "prod_popular_30_credits",
            "yearly": "prod_popular_30_credits",
        },
    },
    {
        "id": "premium",
        "name": "Premium",
        "credits": 30,  # granted on every paid period
        "currency": "USD",
        "prices": {"one_time": 999, "monthly": 999, "yearly": 9999},
        "creem": {
            "one_time": "prod_premium_monthly_sub",
            "monthly": "prod_premium_monthly_sub",
            "yearly": "prod_premium_yearly_sub",
        },
    },
    {
        "id": "credits_bulk",
        "name": "Bulk",
        "credits": 100,
        "currency": "USD",
        "prices": {"one_time": 5999, "monthly": 5999, "yearly": 5999},
        "creem": {
            "one_time": "prod_bulk_100_credits",
            "monthly": "prod_bulk_100_credits",
            "yearly": "prod_bulk_100_credits",
        },
    },
]


def get_tier_by_id(tier_id):
    """Return the tier dict for an internal tier id, or None."""
    for tier in PRODUCT_TIERS:
        if tier["id"] == tier_id:
            return tier
    return None


def get_tier_by_product_id(product_id):
    """Reverse lookup: provider product id -> tier dict, or None."""
    if not product_id:
        return None
    for tier in PRODUCT_TIERS:
        if product_id in tier["creem"].values():
            return tier
    return None


def normalize_product_id(product_id):
    """Tier id when the provider product (or tier id) is known, else unchanged."""
    tier = get_tier_by_product_id(product_id) or get_tier_by_id(product_id)
    return tier["id"] if tier else product_id


def resolve_product_id(tier, payment_mode, billing_cycle=None):
    """Pick the provider product id for a checkout.

    One-time purchases use the "one_time" product; subscriptions use the
    monthly product unless billing_cycle is "yearly".
    """
    if payment_mode == "one_time":
        key = "one_time"
    else:
        key = "yearly" if billing_cycle == "yearly" else "monthly"
    return tier["creem"].get(key)
