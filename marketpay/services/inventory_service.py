"""Inventory service — stock holds for unpaid orders.

Responsible for:
- Reserving every line item of an order (all-or-nothing)
- Releasing an order's holds (idempotent)
- Committing held stock once payment succeeds
- Selling from available stock when a paid order's hold had lapsed

Every stock change is a single conditional UPDATE so concurrent checkouts
can never push `reserved` past `quantity`. InventoryReservation rows record
what each order holds, which is what makes release/commit repeatable.
"""

import logging
from collections import OrderedDict

from sqlalchemy import update

from marketpay.errors import InsufficientStockError, NotFoundError
from marketpay.extensions import db
from marketpay.models.inventory import InventoryItem, InventoryReservation
from marketpay.models.order import Order

logger = logging.getLogger(__name__)


def _held_reservations(order_id):
    return InventoryReservation.query.filter_by(
        order_id=order_id, status="held"
    ).all()


def _requested_quantities(order):
    """Sum line-item quantities per product, keeping line order."""
    requested = OrderedDict()
    for item in order.items:
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
    return requested


# ──────────────────────────────────────────────
# Reserve
# ──────────────────────────────────────────────

def reserve_inventory(order_id):
    """Hold stock for every line item of the order.

    Either every item is reserved or none is: on the first shortfall the
    transaction is rolled back and InsufficientStockError is raised.
    An order that already holds reservations is left untouched.

    Returns the list of InventoryReservation rows now held.
    """
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found", order_id=order_id)

    existing = _held_reservations(order_id)
    if existing:
        logger.info(f"Order {order.order_reference} already holds {len(existing)} reservation(s)")
        return existing

    reservations = []
    for product_id, qty in _requested_quantities(order).items():
        if qty <= 0:
            db.session.rollback()
            raise InsufficientStockError(
                "Line item quantity must be positive", product_id=product_id
            )

        result = db.session.execute(
            update(InventoryItem)
            .where(
                InventoryItem.product_id == product_id,
                InventoryItem.vendor_id == order.vendor_id,
                InventoryItem.reserved + qty <= InventoryItem.quantity,
            )
            .values(reserved=InventoryItem.reserved + qty)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.session.rollback()
            logger.info(
                f"Insufficient stock for product {product_id} on order "
                f"{order.order_reference} (requested {qty})"
            )
            raise InsufficientStockError(
                "Insufficient stock", product_id=product_id, requested=qty
            )

        reservation = InventoryReservation(
            order_id=order.id,
            product_id=product_id,
            vendor_id=order.vendor_id,
            quantity=qty,
            status="held",
        )
        db.session.add(reservation)
        reservations.append(reservation)

    db.session.commit()
    logger.info(f"Reserved {len(reservations)} product(s) for order {order.order_reference}")
    return reservations


def _claim_reservation(reservation_id, new_status):
    """Move a reservation out of `held`. False if another caller got there first."""
    result = db.session.execute(
        update(InventoryReservation)
        .where(
            InventoryReservation.id == reservation_id,
            InventoryReservation.status == "held",
        )
        .values(status=new_status)
    )
    return result.rowcount > 0


# ──────────────────────────────────────────────
# Release
# ──────────────────────────────────────────────

def release_inventory(order_id, commit=True):
    """Return an order's held stock to the available pool.

    No-op when the order holds nothing (already released, committed, or
    never reserved). Returns the number of reservations released.

    Pass commit=False to run inside the caller's transaction.
    """
    released = 0
    for reservation in _held_reservations(order_id):
        if not _claim_reservation(reservation.id, "released"):
            continue
        result = db.session.execute(
            update(InventoryItem)
            .where(
                InventoryItem.product_id == reservation.product_id,
                InventoryItem.vendor_id == reservation.vendor_id,
                InventoryItem.reserved >= reservation.quantity,
            )
            .values(reserved=InventoryItem.reserved - reservation.quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                f"Inventory row for product {reservation.product_id} had less "
                f"reserved than the hold of order {order_id}"
            )
        released += 1

    if commit:
        db.session.commit()
    if released:
        logger.info(f"Released {released} reservation(s) for order {order_id}")
    return released


# ──────────────────────────────────────────────
# Commit
# ──────────────────────────────────────────────

def commit_inventory(product_id, vendor_id, quantity):
    """Convert `quantity` reserved units into a sale.

    Decrements quantity and reserved together in one statement.
    Returns True if the row was updated. Does not commit.
    """
    result = db.session.execute(
        update(InventoryItem)
        .where(
            InventoryItem.product_id == product_id,
            InventoryItem.vendor_id == vendor_id,
            InventoryItem.reserved >= quantity,
            InventoryItem.quantity >= quantity,
        )
        .values(
            quantity=InventoryItem.quantity - quantity,
            reserved=InventoryItem.reserved - quantity,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def commit_order_inventory(order_id, commit=True):
    """Commit every held reservation of a paid order.

    Idempotent: reservations already committed are skipped. Line items
    with no hold are left to commit_unheld_items. Returns the number of
    reservations committed.
    """
    reservations = InventoryReservation.query.filter_by(order_id=order_id).all()

    committed = 0
    for reservation in reservations:
        if reservation.status != "held":
            continue
        if not _claim_reservation(reservation.id, "committed"):
            continue
        if commit_inventory(reservation.product_id, reservation.vendor_id, reservation.quantity):
            committed += 1
        else:
            logger.error(
                f"Failed to commit {reservation.quantity} unit(s) of product "
                f"{reservation.product_id} for order {order_id}"
            )

    if commit:
        db.session.commit()
    return committed


def commit_unheld_items(order_id):
    """Sell line items that hold no stock, e.g. a hold that lapsed before payment.

    Each product comes out of available stock (quantity - reserved) in one
    conditional UPDATE and is recorded as a committed reservation, so a
    repeat call sells nothing twice. Does not commit.

    Returns the product ids that could not be covered.
    """
    order = db.session.get(Order, order_id)
    if not order:
        return []

    covered = {
        r.product_id
        for r in InventoryReservation.query.filter_by(order_id=order_id)
        if r.status in ("held", "committed")
    }

    shortfall = []
    for product_id, qty in _requested_quantities(order).items():
        if product_id in covered:
            continue
        result = db.session.execute(
            update(InventoryItem)
            .where(
                InventoryItem.product_id == product_id,
                InventoryItem.vendor_id == order.vendor_id,
                InventoryItem.quantity - InventoryItem.reserved >= qty,
            )
            .values(quantity=InventoryItem.quantity - qty)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.error(
                f"Order {order.order_reference} paid but fewer than {qty} unit(s) "
                f"of product {product_id} are available"
            )
            shortfall.append(product_id)
            continue

        db.session.add(InventoryReservation(
            order_id=order.id,
            product_id=product_id,
            vendor_id=order.vendor_id,
            quantity=qty,
            status="committed",
        ))
        logger.warning(
            f"Order {order.order_reference} paid without a hold, sold {qty} unit(s) "
            f"of product {product_id} from available stock"
        )
    return shortfall
