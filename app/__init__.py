import os
import logging

import click
from flask import Flask, jsonify

from app.config import config_by_name
from app.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- Register blueprints ---
    from app.blueprints.billing import billing_bp
    from app.blueprints.credits import credits_bp
    from app.blueprints.webhooks import webhooks_bp

    app.register_blueprint(billing_bp)
    app.register_blueprint(credits_bp)
    app.register_blueprint(webhooks_bp)

    # Webhooks are CSRF-exempt: the raw body is verified by signature instead
    csrf.exempt(webhooks_bp)

    # --- Error handlers (JSON API) ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests. Please slow down."}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only: nothing on this origin should load or frame anything
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("list-webhook-events")
    @click.option("--limit", default=20, show_default=True, help="Rows to show")
    @click.option("--provider", default=None, help="Filter by provider")
    def list_webhook_events(limit, provider):
        """Show the most recent rows of the webhook idempotency ledger.

        Usage:
            flask list-webhook-events
            flask list-webhook-events --limit 50 --provider creem
        """
        from app.services.billing_service import BillingRepository

        events = BillingRepository().list_webhook_events(provider=provider, limit=limit)
        if not events:
            click.echo("No webhook events recorded.")
            return

        for event in events:
            created = event.created_at.isoformat() if event.created_at else "-"
            click.echo(
                f"  {created}  {event.provider:<8} {event.event_type:<28} {event.event_id}"
            )

    @app.cli.command("cancel-subscription")
    @click.argument("subscription_id")
    def cancel_subscription(subscription_id):
        """Ask Creem to cancel a subscription.

        Local state is not touched here; it changes when the resulting
        subscription.canceled webhook arrives.

        Usage:
            flask cancel-subscription sub_123
        """
        from app.errors import ProviderError
        from app.services.creem_client import CreemClient

        try:
            CreemClient.from_config(app.config).cancel_subscription(subscription_id)
        except ProviderError as e:
            click.echo(f"ERROR: {e}")
            raise SystemExit(1)

        click.echo(f"Cancellation requested for {subscription_id}.")
        click.echo("Local state will update when the webhook is received.")

    @app.cli.command("verify-creem-products")
    def verify_creem_products():
        """Verify every configured Creem product id exists for the current key.

        Uses CREEM_API_KEY and CREEM_ENVIRONMENT from env.
        Run with prod env vars to confirm live products; test vars for test mode.
        """
        from app.errors import ProviderError
        from app.products import PRODUCT_TIERS
        from app.services.creem_client import CreemClient

        if not app.config.get("CREEM_API_KEY"):
            click.echo("ERROR: CREEM_API_KEY is not set.")
            return
        click.echo(f"Creem environment: {app.config.get('CREEM_ENVIRONMENT')}")
        click.echo("")

        client = CreemClient.from_config(app.config)

        for tier in PRODUCT_TIERS:
            click.echo(f"{tier['id']} ({tier['name']}):")
            for mode, product_id in tier["creem"].items():
                try:
                    product = client.retrieve_product(product_id)
                except ProviderError as e:
                    click.echo(f"  {mode}: {product_id}")
                    click.echo(f"    ERROR: {e}")
                    continue
                click.echo(f"  {mode}: {product_id}")
                click.echo(
                    f"    exists=True, name={product.get('name', '?')}, "
                    f"billing_type={product.get('billing_type', '?')}"
                )
            click.echo("")
