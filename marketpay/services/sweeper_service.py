"""Reservation expiry sweeper.

Cancels unpaid orders whose payment window has passed and gives their
stock back. Meant to run every few minutes (flask sweep-reservations).
"""

import logging
from datetime import datetime, timezone

from flask import current_app

from marketpay.extensions import db
from marketpay.models.order import Order
from marketpay.models.payment import Payment
from marketpay.services.inventory_service import release_inventory
from marketpay.services.notification_service import notify_user

logger = logging.getLogger(__name__)

EXPIRABLE_STATUSES = ("pending", "initiated")


def _expire_order(order_id):
    """Release, cancel and notify for one order, in one transaction.

    Returns False if the order moved on (e.g. paid) since it was selected.
    """
    order = db.session.get(Order, order_id)
    if not order or order.status not in EXPIRABLE_STATUSES:
        return False

    release_inventory(order.id, commit=False)
    Payment.query.filter_by(order_id=order.id, status="initiated").update(
        {"status": "cancelled"}, synchronize_session=False
    )
    order.status = "cancelled"
    notify_user(
        order.user_id,
        "order_cancelled",
        "Order cancelled",
        f"Your order {order.order_reference} was cancelled due to inactive payment.",
        {"order_id": order.id, "order_reference": order.order_reference},
    )
    db.session.commit()
    return True


def sweep_expired_reservations(batch_size=None):
    """Cancel expired unpaid orders, oldest expiry first.

    Per-order failures are logged and counted, never raised.
    Returns {"processed": n, "cancelled": n, "failed": n}.
    """
    batch_size = batch_size or current_app.config.get("RESERVATION_SWEEP_BATCH_SIZE", 100)
    now = datetime.now(timezone.utc)

    order_ids = [
        row.id
        for row in (
            db.session.query(Order.id)
            .filter(Order.status.in_(EXPIRABLE_STATUSES))
            .filter(Order.expires_at.isnot(None))
            .filter(Order.expires_at < now)
            .order_by(Order.expires_at)
            .limit(batch_size)
            .all()
        )
    ]

    results = {"processed": len(order_ids), "cancelled": 0, "failed": 0}
    for order_id in order_ids:
        try:
            if _expire_order(order_id):
                results["cancelled"] += 1
        except Exception as e:
            db.session.rollback()
            results["failed"] += 1
            logger.error(f"Failed to expire order {order_id}: {e}", exc_info=True)

    if order_ids:
        logger.info(
            f"Reservation sweep: {results['cancelled']} cancelled, "
            f"{results['failed']} failed of {results['processed']} expired"
        )
    return results
