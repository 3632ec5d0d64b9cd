"""Orders blueprint — /api/orders/*

Internal JSON API called by the storefront backend. Every route requires
the internal Bearer API key. Service errors (SettlementError) are turned
into JSON responses by the app-level error handler.

Route Map:
  POST /api/orders/<order_id>/payment-session  — Create or reuse a payment session
  POST /api/orders/claim                       — Attach a guest order to a user
  POST /api/orders/<order_id>/delivered        — Confirm delivery
  POST /api/orders/<order_id>/commission       — (Re)calculate commission
  POST /api/orders/<order_id>/escrow/release   — Release escrow to the vendor
  POST /api/orders/<order_id>/refund           — Refund a TJ payment (full or partial)
  POST /api/orders/<order_id>/settlement       — Settle or reverse a TJ transaction
"""

import logging

from flask import Blueprint, jsonify, request

from marketpay.decorators import internal_api_key_required
from marketpay.extensions import limiter
from marketpay.services.checkout_service import (
    claim_order,
    create_payment_session,
    mark_order_delivered,
)
from marketpay.services.commission_service import calculate_commission
from marketpay.services.escrow_service import release_escrow
from marketpay.services.refund_service import refund_payment, settle_payment

logger = logging.getLogger(__name__)

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _money(value):
    return str(value) if value is not None else None


def _order_dict(order):
    return {
        "id": order.id,
        "order_reference": order.order_reference,
        "status": order.status,
        "total": _money(order.total),
        "currency": order.currency,
        "user_id": order.user_id,
        "email_verified": order.email_verified,
        "expires_at": order.expires_at.isoformat() if order.expires_at else None,
        "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
    }


# ─── Checkout ────────────────────────────────────────────────────

@orders_bp.route("/<order_id>/payment-session", methods=["POST"])
@internal_api_key_required
@limiter.limit("20 per minute")
def payment_session(order_id):
    data = request.get_json(silent=True) or {}
    session = create_payment_session(
        order_id,
        return_url=data.get("return_url"),
        provider_name=data.get("provider"),
    )
    status = 200 if session["reused"] else 201
    return jsonify(session), status


@orders_bp.route("/claim", methods=["POST"])
@internal_api_key_required
def claim():
    data = request.get_json(silent=True) or {}
    order = claim_order(data.get("order_reference"), data.get("user_id"))
    return jsonify(_order_dict(order))


@orders_bp.route("/<order_id>/delivered", methods=["POST"])
@internal_api_key_required
def delivered(order_id):
    order = mark_order_delivered(order_id)
    return jsonify(_order_dict(order))


# ─── Settlement ──────────────────────────────────────────────────

@orders_bp.route("/<order_id>/commission", methods=["POST"])
@internal_api_key_required
def commission(order_id):
    result = calculate_commission(order_id)
    return jsonify({
        "commission_id": result["commission_id"],
        "commission_amount": _money(result["commission_amount"]),
        "vendor_amount": _money(result["vendor_amount"]),
        "platform_amount": _money(result["platform_amount"]),
        "config_applied": result["config_applied"],
    })


@orders_bp.route("/<order_id>/escrow/release", methods=["POST"])
@internal_api_key_required
def escrow_release(order_id):
    data = request.get_json(silent=True) or {}
    result = release_escrow(
        order_id,
        trigger=data.get("trigger", "manual"),
        actor_id=data.get("actor_id"),
    )
    return jsonify({
        "success": True,
        "already_released": result["already_released"],
        "escrow_release_id": result["escrow_release_id"],
        "transaction_id": result["transaction_id"],
        "vendor_amount": _money(result["vendor_amount"]),
        "platform_amount": _money(result["platform_amount"]),
        "payout_id": result["payout_id"],
    })


# ─── Refunds (TJ) ────────────────────────────────────────────────

@orders_bp.route("/<order_id>/refund", methods=["POST"])
@internal_api_key_required
@limiter.limit("10 per minute")
def refund(order_id):
    data = request.get_json(silent=True) or {}
    result = refund_payment(
        order_id,
        amount=data.get("amount"),
        reason=data.get("reason"),
        actor_id=data.get("actor_id"),
    )
    return jsonify({
        "success": True,
        "payment_id": result["payment_id"],
        "refunded": _money(result["refunded"]),
        "refunded_total": _money(result["refunded_total"]),
        "remaining": _money(result["remaining"]),
        "status": result["status"],
    })


@orders_bp.route("/<order_id>/settlement", methods=["POST"])
@internal_api_key_required
@limiter.limit("10 per minute")
def settlement(order_id):
    data = request.get_json(silent=True) or {}
    result = settle_payment(
        order_id,
        data.get("action"),
        amount=data.get("amount"),
        actor_id=data.get("actor_id"),
    )
    return jsonify({"success": True, **result})
