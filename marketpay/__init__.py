import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from marketpay.config import config_by_name
from marketpay.errors import SettlementError
from marketpay.extensions import db, migrate, limiter


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
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from marketpay import models  # noqa: F401

    # --- Register blueprints ---
    from marketpay.blueprints.orders import orders_bp
    from marketpay.blueprints.payouts import payouts_bp
    from marketpay.blueprints.webhooks import webhooks_bp

    app.register_blueprint(orders_bp)
    app.register_blueprint(payouts_bp)
    app.register_blueprint(webhooks_bp)

    # --- Health check ---
    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    # --- Error handlers ---
    @app.errorhandler(SettlementError)
    def settlement_error(e):
        if e.http_status >= 500:
            app.logger.error(f"{e.kind}: {e.message}")
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({"error": e.name.lower().replace(" ", "_"), "message": e.description}), e.code

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "internal", "message": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # JSON API, never framed
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug and not app.testing:
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

    @app.cli.command("sweep-reservations")
    @click.option("--batch-size", type=int, default=None, help="Max orders per run.")
    def sweep_reservations(batch_size):
        """Cancel expired unpaid orders and release their stock.

        Usage:
            flask sweep-reservations
            flask sweep-reservations --batch-size 500
        """
        from marketpay.services.sweeper_service import sweep_expired_reservations

        results = sweep_expired_reservations(batch_size=batch_size)
        click.echo(
            f"Expired: {results['processed']}  cancelled: {results['cancelled']}  "
            f"failed: {results['failed']}"
        )

    @app.cli.command("auto-release-escrow")
    @click.option("--batch-size", type=int, default=None, help="Max orders per run.")
    def auto_release_escrow(batch_size):
        """Release escrow for orders delivered past AUTO_RELEASE_AFTER_HOURS."""
        from marketpay.services.escrow_service import auto_release_delivered_orders

        results = auto_release_delivered_orders(batch_size=batch_size)
        click.echo(f"Released: {results['released']}  failed: {results['failed']}")
        for error in results["errors"]:
            click.echo(f"  {error['order_id']}: {error['error']}")

    @app.cli.command("reconcile-payouts")
    @click.option("--older-than", type=int, default=None, help="Minutes a payout must have been pending.")
    def reconcile_payouts(older_than):
        """Re-process vendor payouts stuck in pending."""
        from marketpay.services.payout_service import reconcile_pending_payouts

        results = reconcile_pending_payouts(older_than_minutes=older_than)
        click.echo(f"Processed: {results['processed']}  failed: {results['failed']}")
        for error in results["errors"]:
            click.echo(f"  {error['payout_id']}: {error['error']}")

    @app.cli.command("lookup-transaction")
    @click.option("--transaction-id", default=None, help="Provider transaction id.")
    @click.option("--session-id", default=None, help="Hosted payment session id.")
    @click.option("--merchant-ref", default=None, help="Our merchant reference (PAY-...).")
    def lookup_transaction(transaction_id, session_id, merchant_ref):
        """Ask TJ for the state of a transaction (reconciling unknown outcomes).

        Usage:
            flask lookup-transaction --merchant-ref PAY-ORD-1001-1712345678901
        """
        import json

        from marketpay.services.payment_providers import TJProvider

        try:
            data = TJProvider(app.config).lookup_transaction(
                transaction_id=transaction_id,
                session_id=session_id,
                merchant_ref=merchant_ref,
            )
        except SettlementError as e:
            click.echo(f"ERROR: {e.message}")
            raise SystemExit(1)
        click.echo(json.dumps(data, indent=2, default=str))

    @app.cli.command("seed-demo")
    @click.option("--stock", default=5, help="Units of the demo product in stock.")
    def seed_demo(stock):
        """Create a demo vendor, product, stock, commission policy and order.

        Usage:
            flask seed-demo
        """
        import uuid
        from decimal import Decimal

        from marketpay.models.commission import CommissionConfig
        from marketpay.models.inventory import InventoryItem
        from marketpay.models.order import Order, OrderItem
        from marketpay.models.vendor import Product, Vendor

        vendor = Vendor(
            name="Demo Vendor",
            owner_id=str(uuid.uuid4()),
            metadata_={"payout_recipient_id": "demo-recipient"},
        )
        product = Product(name="Demo Product", category_id=str(uuid.uuid4()))
        db.session.add_all([vendor, product])
        db.session.flush()

        db.session.add(InventoryItem(product_id=product.id, vendor_id=vendor.id, quantity=stock))

        if not CommissionConfig.query.filter_by(entity_type="platform", active=True).first():
            db.session.add(CommissionConfig(
                entity_type="platform", is_percentage=True, rate=Decimal("5.000"),
            ))
        db.session.add(CommissionConfig(
            entity_type="vendor", entity_id=vendor.id, is_percentage=True, rate=Decimal("10.000"),
        ))

        reference = f"ORD-{uuid.uuid4().hex[:8].upper()}"
        order = Order(
            order_reference=reference,
            total=Decimal("100.00"),
            currency="USD",
            vendor_id=vendor.id,
            user_id=str(uuid.uuid4()),
            customer_email="buyer@example.com",
            email_verified=True,
        )
        order.items.append(OrderItem(product_id=product.id, quantity=1, unit_price=Decimal("100.00")))
        db.session.add(order)
        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Demo data created successfully!")
        click.echo("=" * 60)
        click.echo(f"  Vendor:    {vendor.name} (id: {vendor.id})")
        click.echo(f"  Product:   {product.name} (id: {product.id}, stock: {stock})")
        click.echo(f"  Order:     {order.order_reference} (id: {order.id})")
        click.echo("=" * 60)
