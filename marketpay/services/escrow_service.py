"""Escrow service — releasing held funds to vendors.

Responsible for:
- Releasing escrow for one order exactly once (manual / auto / admin)
- Recording the release, the vendor payout and the commission together
- Sweeping delivered orders past the auto-release window

The escrow_releases row is claimed (status pending) before the provider
is called. Its unique order_id is what stops two concurrent releases; a
failed row can be claimed again, an unknown one cannot.
"""

import logging
import time
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from marketpay.errors import (
    NotFoundError,
    OrderNotEligibleError,
    PaymentNotConfirmedError,
    ProviderError,
    ReleaseInProgressError,
    SettlementError,
    UnknownOutcomeError,
    ValidationError,
)
from marketpay.extensions import db
from marketpay.models.commission import PlatformCommission
from marketpay.models.escrow import EscrowRelease, VendorPayout
from marketpay.models.order import Order
from marketpay.models.payment import Payment
from marketpay.services.audit_service import log_financial_event
from marketpay.services.commission_service import calculate_commission
from marketpay.services.payment_providers import EscrowClient
from marketpay.services.payout_service import dispatch_payout

logger = logging.getLogger(__name__)

TRIGGERS = ("manual", "auto", "admin")


def _as_utc(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _already_released(release):
    return {
        "already_released": True,
        "escrow_release_id": release.id,
        "transaction_id": release.provider_transaction_id,
        "vendor_amount": release.vendor_amount,
        "platform_amount": release.platform_amount,
        "payout_id": release.payout.id if release.payout else None,
    }


def _check_existing(release):
    """Short-circuit or refuse based on an existing release row."""
    if release.status == "completed":
        return _already_released(release)
    if release.status == "pending":
        raise ReleaseInProgressError(
            "Escrow release already in progress", order_id=release.order_id
        )
    if release.status == "unknown":
        raise UnknownOutcomeError(
            "Previous escrow release outcome is unknown, reconcile before retrying",
            order_id=release.order_id,
            escrow_release_id=release.id,
        )
    return None


def _check_eligibility(order, trigger):
    if trigger == "admin":
        return
    if order.status != "delivered":
        raise OrderNotEligibleError(
            f"Order must be delivered before escrow release (order is {order.status})",
            order_id=order.id,
        )
    if trigger == "auto":
        hours = current_app.config.get("AUTO_RELEASE_AFTER_HOURS", 72)
        delivered_at = _as_utc(order.delivered_at)
        if not delivered_at or delivered_at > datetime.now(timezone.utc) - timedelta(hours=hours):
            raise OrderNotEligibleError(
                f"Order delivered less than {hours}h ago, not eligible for auto release",
                order_id=order.id,
            )


def _confirmed_payment(order):
    payment = (
        Payment.query
        .filter_by(order_id=order.id, status="succeeded")
        .order_by(Payment.updated_at.desc())
        .first()
    )
    if not payment or not payment.provider_payment_id:
        raise PaymentNotConfirmedError(
            "No confirmed provider payment for this order", order_id=order.id
        )
    if payment.refunded_amount or payment.settlement_status in ("reversed", "unknown"):
        raise OrderNotEligibleError(
            "Payment was refunded or reversed, escrow cannot be released",
            order_id=order.id,
            settlement_status=payment.settlement_status,
        )
    return payment


def _claim_release(order, payment, commission, trigger, idempotency_key, existing):
    """Insert (or re-claim a failed) release row as pending. Returns its id."""
    values = dict(
        payment_id=payment.id,
        total_amount=order.total,
        vendor_amount=commission["vendor_amount"],
        platform_amount=commission["platform_amount"],
        idempotency_key=idempotency_key,
        trigger=trigger,
        status="pending",
        failure_reason=None,
    )

    if existing is not None:
        result = db.session.execute(
            update(EscrowRelease)
            .where(EscrowRelease.id == existing.id, EscrowRelease.status == "failed")
            .values(**values)
        )
        db.session.commit()
        if result.rowcount == 0:
            raise ReleaseInProgressError("Escrow release already in progress", order_id=order.id)
        return existing.id

    release = EscrowRelease(order_id=order.id, metadata_={}, **values)
    db.session.add(release)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ReleaseInProgressError("Escrow release already in progress", order_id=order.id)
    return release.id


def _transaction_reference(data, fallback):
    inner = data.get("data") if isinstance(data.get("data"), dict) else {}
    for source in (inner, data):
        for key in ("transaction_id", "reference", "id"):
            if source.get(key):
                return str(source[key])
    return fallback


# ──────────────────────────────────────────────
# Release
# ──────────────────────────────────────────────

def release_escrow(order_id, trigger="manual", actor_id=None):
    """Release escrowed funds for an order and schedule the vendor payout.

    1. Completed release -> {"already_released": True, ...}
    2. Eligibility (delivered unless admin, window re-checked for auto)
    3. Confirmed payment with a provider payment id
    4. Commission calculated (failure aborts with no side effects)
    5. Release row claimed, provider called with an idempotency key
    6. Success -> provider reference saved, then release completed, payout
       pending, commission recorded and audit entry in one commit (a failure
       here leaves the release unknown)
    7. Payout dispatched (never rolls back the release)
    """
    if trigger not in TRIGGERS:
        raise ValidationError(f"Invalid trigger: {trigger}", allowed=list(TRIGGERS))

    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found", order_id=order_id)

    existing = EscrowRelease.query.filter_by(order_id=order.id).first()
    if existing is not None:
        short_circuit = _check_existing(existing)
        if short_circuit:
            logger.info(f"Escrow for order {order.order_reference} already released")
            return short_circuit

    _check_eligibility(order, trigger)
    payment = _confirmed_payment(order)
    commission = calculate_commission(order.id)

    idempotency_key = f"escrow_{order.id}_{int(time.time() * 1000)}"
    release_id = _claim_release(order, payment, commission, trigger, idempotency_key, existing)
    release = db.session.get(EscrowRelease, release_id)

    logger.info(
        f"Releasing escrow for order {order.order_reference} "
        f"(trigger={trigger}, key={idempotency_key})"
    )
    result = EscrowClient().release_escrow(payment.provider_payment_id, idempotency_key)

    if result.outcome_unknown:
        release.status = "unknown"
        release.failure_reason = f"Provider outcome unknown: {result.error}"
        db.session.commit()
        logger.error(f"Escrow release for order {order_id} outcome unknown: {result.error}")
        raise UnknownOutcomeError(
            "Escrow release outcome unknown, reconcile with provider",
            order_id=order_id,
            escrow_release_id=release.id,
        )

    if not result.ok:
        release.status = "failed"
        release.failure_reason = result.raw_body or f"HTTP {result.status_code}"
        db.session.commit()
        logger.error(f"Escrow release for order {order_id} rejected: {result.status_code}")
        raise ProviderError(
            "Escrow release rejected by provider",
            status_code=result.status_code,
            raw_body=result.raw_body,
        )

    # Provider has moved the money; keep its reference even if recording fails
    release.provider_transaction_id = _transaction_reference(
        result.data, payment.provider_payment_id
    )
    release.metadata_ = {**(release.metadata_ or {}), "provider_response": result.data}
    db.session.commit()

    try:
        payout_id = _record_release(order, release, commission, trigger, actor_id)
    except Exception as e:
        db.session.rollback()
        release = db.session.get(EscrowRelease, release_id)
        release.status = "unknown"
        release.failure_reason = f"Escrow released by provider but recording failed: {e}"
        db.session.commit()
        logger.error(
            f"Escrow for order {order_id} released by provider "
            f"(txn {release.provider_transaction_id}) but could not be recorded: {e}",
            exc_info=True,
        )
        raise UnknownOutcomeError(
            "Escrow released by provider but not recorded, reconcile before retrying",
            order_id=order_id,
            escrow_release_id=release_id,
            transaction_id=release.provider_transaction_id,
        )

    logger.info(f"Escrow released for order {order.order_reference}, payout {payout_id} scheduled")

    try:
        dispatch_payout(payout_id)
    except Exception as e:
        logger.error(f"Failed to dispatch payout {payout_id}: {e}", exc_info=True)

    return {
        "already_released": False,
        "escrow_release_id": release_id,
        "transaction_id": release.provider_transaction_id,
        "vendor_amount": commission["vendor_amount"],
        "platform_amount": commission["platform_amount"],
        "payout_id": payout_id,
    }


def _record_release(order, release, commission, trigger, actor_id):
    """Complete the release, schedule the payout and record the commission in one commit."""
    now = datetime.now(timezone.utc)
    release.status = "completed"
    release.released_at = now

    payout = VendorPayout(
        vendor_id=order.vendor_id,
        escrow_release_id=release.id,
        order_id=order.id,
        amount=commission["vendor_amount"],
        currency=current_app.config.get("PAYOUT_CURRENCY", "ZMW"),
        status="pending",
        scheduled_at=now,
    )
    db.session.add(payout)

    db.session.execute(
        update(PlatformCommission)
        .where(PlatformCommission.order_id == order.id)
        .values(status="recorded", escrow_release_id=release.id)
    )
    log_financial_event(
        "escrow_released",
        "order",
        order.id,
        amount=order.total,
        actor_id=actor_id,
        metadata={
            "trigger": trigger,
            "escrow_release_id": release.id,
            "transaction_id": release.provider_transaction_id,
            "vendor_amount": str(commission["vendor_amount"]),
            "platform_amount": str(commission["platform_amount"]),
        },
    )
    db.session.commit()
    return payout.id


# ──────────────────────────────────────────────
# Auto-release sweep
# ──────────────────────────────────────────────

def auto_release_delivered_orders(batch_size=None):
    """Release escrow for orders delivered longer ago than the window.

    Per-order failures are collected, never raised.
    Returns {"released": n, "failed": n, "errors": [...]}.
    """
    config = current_app.config
    hours = config.get("AUTO_RELEASE_AFTER_HOURS", 72)
    batch_size = batch_size or config.get("AUTO_RELEASE_BATCH_SIZE", 50)
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)

    order_ids = [
        row.id
        for row in (
            db.session.query(Order.id)
            .outerjoin(EscrowRelease, EscrowRelease.order_id == Order.id)
            .filter(Order.status == "delivered")
            .filter(Order.delivered_at < cutoff)
            .filter(or_(EscrowRelease.id.is_(None), EscrowRelease.status == "failed"))
            .order_by(Order.delivered_at)
            .limit(batch_size)
            .all()
        )
    ]

    results = {"released": 0, "failed": 0, "errors": []}
    for order_id in order_ids:
        try:
            outcome = release_escrow(order_id, trigger="auto")
            if not outcome.get("already_released"):
                results["released"] += 1
        except SettlementError as e:
            db.session.rollback()
            results["failed"] += 1
            results["errors"].append({"order_id": order_id, "error": e.message})
            logger.warning(f"Auto-release failed for order {order_id}: {e.message}")
        except Exception as e:
            db.session.rollback()
            results["failed"] += 1
            results["errors"].append({"order_id": order_id, "error": str(e)})
            logger.error(f"Auto-release crashed for order {order_id}: {e}", exc_info=True)

    logger.info(
        f"Auto-release: {results['released']} released, {results['failed']} failed "
        f"of {len(order_ids)} eligible"
    )
    return results
