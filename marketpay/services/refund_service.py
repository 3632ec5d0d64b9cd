"""Refund service — giving TJ payments back to the customer.

Responsible for:
- Full and partial refunds of a captured TJ payment
- Settling (capturing) or reversing (voiding) a TJ transaction
- Auditing and notifying for each provider-side action

Refunds and reversals are refused once escrow has been released to the
vendor, and escrow release is refused once a payment has been refunded or
reversed. A timed-out call marks the payment's settlement_status unknown,
which blocks further refunds until someone reconciles with TJ.
"""

import logging
from decimal import Decimal, InvalidOperation

from marketpay.errors import (
    NotFoundError,
    OrderNotEligibleError,
    PaymentNotConfirmedError,
    UnknownOutcomeError,
    ValidationError,
)
from marketpay.extensions import db
from marketpay.models.escrow import EscrowRelease
from marketpay.models.order import Order
from marketpay.models.payment import Payment
from marketpay.services.audit_service import log_financial_event
from marketpay.services.notification_service import notify_user
from marketpay.services.payment_providers import SETTLEMENT_ACTIONS, get_provider

logger = logging.getLogger(__name__)

SETTLED_STATES = {"settle": "settled", "reverse": "reversed"}


def _parse_amount(value):
    if value is None:
        return None
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise ValidationError("amount must be a decimal number", amount=value)
    if amount <= 0:
        raise ValidationError("amount must be greater than zero", amount=value)
    return amount


def _refundable_payment(order_id):
    """The order and its captured TJ payment, or an error explaining why not."""
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found", order_id=order_id)

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
    if payment.provider != "tj":
        raise ValidationError(
            f"Refunds and settlement are only supported for TJ payments (got {payment.provider})",
            order_id=order.id,
        )
    if payment.settlement_status == "unknown":
        raise UnknownOutcomeError(
            "Previous refund or settlement outcome is unknown, reconcile before retrying",
            order_id=order.id,
            payment_id=payment.id,
        )
    return order, payment


def _check_escrow_not_released(order):
    release = EscrowRelease.query.filter_by(order_id=order.id).first()
    if release is not None and release.status != "failed":
        raise OrderNotEligibleError(
            f"Escrow for this order is {release.status}, funds are no longer refundable",
            order_id=order.id,
            escrow_release_id=release.id,
        )


def _mark_unknown(payment_id, action, error):
    db.session.rollback()
    payment = db.session.get(Payment, payment_id)
    payment.settlement_status = "unknown"
    log_financial_event(
        f"payment_{action}_unknown", "payment", payment.id,
        metadata={"message": error.message, **error.details},
    )
    db.session.commit()
    logger.error(f"TJ {action} for payment {payment.id} outcome unknown: {error.message}")


# ──────────────────────────────────────────────
# Refunds
# ──────────────────────────────────────────────

def refund_payment(order_id, amount=None, reason=None, actor_id=None):
    """Refund all or part of an order's captured TJ payment.

    amount is in major units; None refunds whatever is still refundable.
    A full refund moves the order to refunded.

    Returns {"payment_id", "refunded", "refunded_total", "remaining", "status"}.
    """
    order, payment = _refundable_payment(order_id)
    if payment.settlement_status == "reversed":
        raise OrderNotEligibleError("Payment was reversed, nothing to refund", order_id=order.id)
    _check_escrow_not_released(order)

    already = Decimal(payment.refunded_amount or 0)
    remaining = Decimal(payment.amount) - already
    if remaining <= 0:
        raise OrderNotEligibleError("Payment is already fully refunded", order_id=order.id)

    requested = _parse_amount(amount)
    refund_amount = requested if requested is not None else remaining
    if refund_amount > remaining:
        raise ValidationError(
            f"Refund of {refund_amount} exceeds the refundable {remaining}",
            order_id=order.id,
            refundable=str(remaining),
        )
    partial = already > 0 or refund_amount < remaining

    logger.info(
        f"Refunding {refund_amount} {payment.currency} of payment {payment.id} "
        f"for order {order.order_reference}"
    )
    provider = get_provider("tj")
    try:
        data = provider.refund(
            payment.provider_payment_id,
            amount=refund_amount if partial else None,
            reason=reason,
        )
    except UnknownOutcomeError as e:
        _mark_unknown(payment.id, "refund", e)
        raise

    payment.refunded_amount = already + refund_amount
    fully_refunded = payment.refunded_amount >= Decimal(payment.amount)
    payment.settlement_status = "refunded" if fully_refunded else "partially_refunded"
    if fully_refunded:
        order.status = "refunded"

    log_financial_event(
        "payment_refunded",
        "payment",
        payment.id,
        amount=refund_amount,
        actor_id=actor_id,
        metadata={
            "order_id": order.id,
            "transaction_id": payment.provider_payment_id,
            "reason": reason,
            "refunded_total": str(payment.refunded_amount),
            "provider_response": data,
        },
    )
    notify_user(
        order.user_id,
        "refund",
        "Refund processed",
        f"Your refund for order {order.order_reference} has been processed successfully.",
        {"order_id": order.id, "payment_id": payment.id, "amount": str(refund_amount)},
    )
    db.session.commit()

    logger.info(f"Refund of {refund_amount} recorded for order {order.order_reference}")
    return {
        "payment_id": payment.id,
        "refunded": refund_amount,
        "refunded_total": payment.refunded_amount,
        "remaining": Decimal(payment.amount) - payment.refunded_amount,
        "status": payment.settlement_status,
    }


# ──────────────────────────────────────────────
# Settlement / reversal
# ──────────────────────────────────────────────

def settle_payment(order_id, action, amount=None, actor_id=None):
    """Settle or reverse an order's TJ transaction.

    Repeating the action already applied is a no-op. A reversal returns the
    money to the customer, so it is refused after escrow release and moves
    the order to refunded.
    """
    if action not in SETTLEMENT_ACTIONS:
        raise ValidationError(f"Invalid settlement action: {action}", allowed=list(SETTLEMENT_ACTIONS))

    order, payment = _refundable_payment(order_id)
    target = SETTLED_STATES[action]
    if payment.settlement_status == target:
        logger.info(f"Payment {payment.id} already {target}")
        return {"payment_id": payment.id, "status": target, "already_processed": True}
    if payment.settlement_status is not None:
        raise OrderNotEligibleError(
            f"Payment is {payment.settlement_status}, cannot {action}",
            order_id=order.id,
        )
    if action == "reverse":
        _check_escrow_not_released(order)

    settle_amount = _parse_amount(amount) if action == "settle" else None
    if settle_amount is not None and settle_amount > Decimal(payment.amount):
        raise ValidationError(
            f"Settlement of {settle_amount} exceeds the payment amount {payment.amount}",
            order_id=order.id,
        )

    provider = get_provider("tj")
    try:
        data = provider.settle(payment.provider_payment_id, action, amount=settle_amount)
    except UnknownOutcomeError as e:
        _mark_unknown(payment.id, action, e)
        raise

    payment.settlement_status = target
    log_financial_event(
        f"payment_{target}",
        "payment",
        payment.id,
        amount=settle_amount if settle_amount is not None else payment.amount,
        actor_id=actor_id,
        metadata={
            "order_id": order.id,
            "transaction_id": payment.provider_payment_id,
            "provider_response": data,
        },
    )
    if action == "reverse":
        order.status = "refunded"
        notify_user(
            order.user_id,
            "refund",
            "Payment reversed",
            f"Your payment for order {order.order_reference} has been reversed.",
            {"order_id": order.id, "payment_id": payment.id},
        )
    db.session.commit()

    logger.info(f"Payment {payment.id} {target} for order {order.order_reference}")
    return {"payment_id": payment.id, "status": target, "already_processed": False}
