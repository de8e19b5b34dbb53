import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

from marketplace.config import config_by_name
from marketplace.errors import OrderError
from marketplace.extensions import db, migrate, login_manager, csrf, limiter, tasks


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
    tasks.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from marketplace import models  # noqa: F401

    # --- Register blueprints ---
    from marketplace.blueprints.auth import auth_bp
    from marketplace.blueprints.orders import orders_bp
    from marketplace.blueprints.payments import payments_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)

    # --- Error handlers ---
    @app.errorhandler(OrderError)
    def order_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify(ok=False, error=e.name, message=e.description), e.code

    @app.errorhandler(500)
    def server_error(e):
        return jsonify(
            ok=False, error="Internal Server Error", message="Something went wrong."
        ), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API: nothing to load, nothing to embed
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Order and payment data must never be cached by intermediaries
        response.headers["Cache-Control"] = "no-store"
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

    @app.cli.command("seed-demo")
    @click.option("--password", default="demo1234", help="Password for every demo user")
    def seed_demo(password):
        """Create an admin, a designer seller, a customer and two products.

        Usage:
            flask seed-demo
            flask seed-demo --password s3cret
        """
        from marketplace.models.product import Product, ProductVariant
        from marketplace.models.user import User

        def _user(email, full_name, role):
            existing = User.query.filter_by(email=email).first()
            if existing:
                click.echo(f"User already exists: {email}")
                return existing
            user = User(
                email=email,
                password_hash=generate_password_hash(password),
                full_name=full_name,
                role=role,
            )
            db.session.add(user)
            db.session.flush()
            click.echo(f"Created {role}: {email}")
            return user

        _user("admin@marketplace.local", "Admin", "admin")
        designer = _user("designer@marketplace.local", "Demo Designer", "designer")
        _user("customer@marketplace.local", "Demo Customer", "customer")

        tee = Product(
            seller_id=designer.id,
            title="Demo Graphic Tee",
            price=799,
            stock=0,
            is_approved=True,
            status="published",
            commission_type="percentage",
            commission_rate=30,
        )
        db.session.add(tee)
        db.session.flush()
        for size, stock in (("M", 10), ("L", 10)):
            db.session.add(
                ProductVariant(
                    product_id=tee.id,
                    sku=f"TEE-{size}",
                    size=size,
                    color="black",
                    stock=stock,
                )
            )

        poster = Product(
            seller_id=designer.id,
            title="Demo Poster",
            price=299,
            stock=25,
            is_approved=True,
            status="published",
            commission_type="fixed",
            commission_rate=50,
        )
        db.session.add(poster)
        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Seed data created successfully!")
        click.echo("=" * 60)
        click.echo(f"  Password:  {password}")
        click.echo(f"  Tee:       {tee.id}")
        click.echo(f"  Poster:    {poster.id}")
        click.echo("=" * 60)

    @app.cli.command("purge-webhook-events")
    @click.option("--days", type=int, default=None,
                  help="Retention in days (default: WEBHOOK_EVENT_RETENTION_DAYS)")
    def purge_webhook_events(days):
        """Delete webhook replay records older than the retention window.

        Usage:
            flask purge-webhook-events
            flask purge-webhook-events --days 7
        """
        from marketplace.services.webhook_service import purge_expired

        count = purge_expired(days)
        click.echo(f"Purged {count} webhook events.")

    @app.cli.command("retry-refunds")
    @click.option("--dry-run", is_flag=True, help="List orders without refunding.")
    def retry_refunds(dry_run):
        """Refund canceled/refunded orders whose refund previously failed.

        Usage:
            flask retry-refunds
            flask retry-refunds --dry-run
        """
        from marketplace.services.order_service import retry_pending_refunds

        summary = retry_pending_refunds(dry_run=dry_run)
        if dry_run:
            click.echo(f"{summary['found']} orders awaiting refund.")
            return
        click.echo(
            f"Refunded {summary['refunded']} of {summary['found']} orders "
            f"({summary['failed']} failed)."
        )
