"""Checkout service — payment sessions and order hand-offs.

Responsible for:
- Creating a hosted payment session for an order (reserve stock first,
  roll everything back if the provider refuses)
- Keeping at most one active session per order
- Attaching a guest order to a user (claim)
- Marking an order delivered
"""

import logging
import time
from datetime import datetime, timedelta, timezone

from flask import current_app

from marketpay.errors import (
    NotFoundError,
    OrderNotEligibleError,
    ResourceStateError,
    SettlementError,
    ValidationError,
)
from marketpay.extensions import db
from marketpay.models.order import Order
from marketpay.models.payment import Payment
from marketpay.services.inventory_service import release_inventory, reserve_inventory
from marketpay.services.payment_providers import get_provider

logger = logging.getLogger(__name__)

SESSION_ELIGIBLE_STATUSES = ("pending", "initiated", "failed")


def _get_order(order_id):
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found", order_id=order_id)
    return order


def _session_response(payment, reused=False):
    return {
        "checkout_url": payment.checkout_url,
        "provider_reference": payment.provider_session_id,
        "merchant_reference": payment.merchant_reference,
        "payment_id": payment.id,
        "reused": reused,
    }


def build_merchant_reference(order):
    """PAY-<order reference>-<epoch ms>-<attempt>, unique per attempt."""
    attempt = order.payments.count() + 1
    return f"PAY-{order.order_reference}-{int(time.time() * 1000)}-{attempt}"


# ──────────────────────────────────────────────
# Payment sessions
# ──────────────────────────────────────────────

def create_payment_session(order_id, return_url=None, provider_name=None):
    """Create (or reuse) a hosted payment session for an order.

    1. Order must exist, be unpaid and have a verified email
    2. A live session (order initiated, not expired) is returned as-is
    3. Abandoned attempts are cancelled
    4. Stock is reserved (InsufficientStockError -> no session at all)
    5. A Payment row is written, then the provider is called
    6. Provider failure -> payment cancelled, stock released, error raised
    7. Success -> order initiated with a fresh expiry

    Returns a dict with checkout_url, provider_reference, merchant_reference.
    """
    order = _get_order(order_id)

    if order.status not in SESSION_ELIGIBLE_STATUSES:
        raise OrderNotEligibleError(
            f"Order is {order.status}, cannot start a payment session",
            order_id=order.id,
        )
    if not order.email_verified:
        raise ValidationError("Email must be verified before payment", order_id=order.id)

    # --- Single active session ---
    open_payments = order.payments.filter_by(status="initiated").order_by(
        Payment.created_at.desc()
    ).all()
    if order.status == "initiated" and not order.is_expired:
        for payment in open_payments:
            if payment.provider_session_id and payment.checkout_url:
                logger.info(
                    f"Reusing active session {payment.provider_session_id} "
                    f"for order {order.order_reference}"
                )
                return _session_response(payment, reused=True)

    for payment in open_payments:
        payment.status = "cancelled"
    if open_payments:
        db.session.commit()
        logger.info(f"Cancelled {len(open_payments)} stale payment attempt(s) for {order.order_reference}")

    # Resolved before any stock is held (unknown name -> ValidationError)
    provider = get_provider(provider_name)
    if not return_url:
        return_url = (
            f"{current_app.config['APP_BASE_URL']}/checkout/return"
            f"?order={order.order_reference}"
        )

    # --- Reserve stock (raises InsufficientStockError) ---
    reserve_inventory(order.id)

    try:
        payment = Payment(
            order_id=order.id,
            vendor_id=order.vendor_id,
            provider=provider.name,
            merchant_reference=build_merchant_reference(order),
            amount=order.total,
            currency=order.currency,
            status="initiated",
        )
        db.session.add(payment)
        db.session.commit()
    except Exception:
        db.session.rollback()
        release_inventory(order.id)
        logger.error(f"Could not record payment attempt for order {order.order_reference}", exc_info=True)
        raise

    try:
        session = provider.create_session(order, payment, return_url)
    except Exception as e:
        db.session.rollback()
        message = e.message if isinstance(e, SettlementError) else str(e)
        logger.error(
            f"Payment session creation failed for order {order.order_reference}: {message}"
        )
        payment.status = "cancelled"
        payment.raw_payload = e.to_dict() if isinstance(e, SettlementError) else {"error": message}
        release_inventory(order.id, commit=False)
        if order.status == "initiated":
            order.status = "pending"
            order.expires_at = None
        db.session.commit()
        raise

    ttl = current_app.config.get("PAYMENT_SESSION_TTL_MINUTES", 30)
    payment.provider_session_id = session.provider_reference
    payment.checkout_url = session.checkout_url
    payment.raw_payload = session.raw
    order.status = "initiated"
    order.expires_at = datetime.now(timezone.utc) + timedelta(minutes=ttl)
    db.session.commit()

    logger.info(
        f"Payment session {session.provider_reference} created via {provider.name} "
        f"for order {order.order_reference}"
    )
    return _session_response(payment)


# ──────────────────────────────────────────────
# Order hand-offs
# ──────────────────────────────────────────────

def claim_order(order_reference, user_id):
    """Attach a guest order to a signed-in user and mark the email verified.

    Claiming again with the same user is a no-op; another user gets a
    ResourceStateError.
    """
    if not order_reference or not user_id:
        raise ValidationError("order_reference and user_id are required")

    order = Order.query.filter_by(order_reference=order_reference).first()
    if not order:
        raise NotFoundError("Order not found", order_reference=order_reference)

    if order.user_id and order.user_id != user_id:
        raise ResourceStateError("Order already belongs to another user", order_id=order.id)

    order.user_id = user_id
    order.email_verified = True
    db.session.commit()
    logger.info(f"Order {order.order_reference} claimed by user {user_id}")
    return order


def mark_order_delivered(order_id):
    """Record delivery of a paid order (starts the auto-release window)."""
    order = _get_order(order_id)
    if order.status == "delivered":
        return order
    if order.status != "paid":
        raise OrderNotEligibleError(
            f"Only paid orders can be delivered (order is {order.status})",
            order_id=order.id,
        )
    order.status = "delivered"
    order.delivered_at = datetime.now(timezone.utc)
    db.session.commit()
    logger.info(f"Order {order.order_reference} marked delivered")
    return order
