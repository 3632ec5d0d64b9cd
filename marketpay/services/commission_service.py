"""Commission service — marketplace fee calculation.

Responsible for:
- Resolving the commission policy for an order
  (vendor -> category of the first line item -> platform default)
- Computing commission/vendor split with Decimal half-up rounding
- Upserting the platform_commissions row and auditing it
"""

import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.exc import IntegrityError

from marketpay.errors import NoCommissionConfigError, NotFoundError, UnclaimedOrderError
from marketpay.extensions import db
from marketpay.models.commission import CommissionConfig, PlatformCommission
from marketpay.models.order import Order
from marketpay.services.audit_service import log_financial_event

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def round_money(value):
    """Round half-up to 2 decimal places (2.345 -> 2.35)."""
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def _active_config(entity_type, entity_id=None):
    query = CommissionConfig.query.filter_by(entity_type=entity_type, active=True)
    if entity_id is not None:
        query = query.filter_by(entity_id=entity_id)
    return query.order_by(CommissionConfig.created_at.desc()).first()


def resolve_commission_config(order):
    """Return the most specific active CommissionConfig for the order, or None."""
    config = _active_config("vendor", order.vendor_id)
    if config:
        return config

    first_item = order.items[0] if order.items else None
    category_id = first_item.product.category_id if first_item and first_item.product else None
    if category_id:
        config = _active_config("category", category_id)
        if config:
            return config

    return _active_config("platform")


def compute_split(total, config):
    """Return (commission, vendor_amount) for `total` under `config`.

    vendor_amount is the exact complement, so the two always sum to total.
    """
    total = round_money(total)
    if config.is_percentage:
        commission = round_money(total * Decimal(config.rate or 0) / Decimal(100))
    else:
        commission = min(round_money(config.fixed_amount or 0), total)
    return commission, total - commission


def _config_dict(config):
    return {
        "id": config.id,
        "entity_type": config.entity_type,
        "entity_id": config.entity_id,
        "is_percentage": config.is_percentage,
        "rate": str(config.rate) if config.rate is not None else None,
        "fixed_amount": str(config.fixed_amount) if config.fixed_amount is not None else None,
    }


def calculate_commission(order_id, commit=True):
    """Calculate and persist the commission split for an order.

    Raises UnclaimedOrderError for guest orders and NoCommissionConfigError
    when no policy applies. A commission already recorded against an
    escrow release is returned unchanged.

    Returns a dict with commission_amount, vendor_amount, platform_amount,
    config_applied and commission_id.
    """
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found", order_id=order_id)
    if not order.user_id:
        raise UnclaimedOrderError("Order must be claimed before commission", order_id=order.id)

    existing = PlatformCommission.query.filter_by(order_id=order.id).first()
    if existing and existing.status == "recorded":
        return {
            "commission_id": existing.id,
            "commission_amount": existing.commission_amount,
            "vendor_amount": existing.vendor_amount,
            "platform_amount": existing.commission_amount,
            "config_applied": None,
        }

    config = resolve_commission_config(order)
    if not config:
        logger.error(f"No commission config resolvable for order {order.order_reference}")
        raise NoCommissionConfigError("No commission configuration found", order_id=order.id)

    commission, vendor_amount = compute_split(order.total, config)
    values = dict(
        vendor_id=order.vendor_id,
        commission_config_id=config.id,
        base_amount=round_money(order.total),
        commission_rate=config.rate if config.is_percentage else None,
        commission_amount=commission,
        vendor_amount=vendor_amount,
        status="pending",
    )

    # --- Upsert on order_id ---
    if existing:
        for key, value in values.items():
            setattr(existing, key, value)
        record = existing
    else:
        record = PlatformCommission(order_id=order.id, **values)
        db.session.add(record)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            record = PlatformCommission.query.filter_by(order_id=order_id).first()
            for key, value in values.items():
                setattr(record, key, value)

    log_financial_event(
        "commission_calculated",
        "order",
        order_id,
        amount=commission,
        metadata={
            "vendor_amount": str(vendor_amount),
            "config_id": config.id,
            "config_scope": config.entity_type,
        },
    )
    if commit:
        db.session.commit()

    logger.info(
        f"Commission for order {order_id}: {commission} "
        f"(vendor {vendor_amount}, {config.entity_type} config)"
    )
    return {
        "commission_id": record.id,
        "commission_amount": commission,
        "vendor_amount": vendor_amount,
        "platform_amount": commission,
        "config_applied": _config_dict(config),
    }
