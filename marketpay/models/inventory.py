"""Inventory models.

- InventoryItem: stock for one (product, vendor) pair. `quantity` is stock
  on hand, `reserved` is the part held by unpaid orders. reserved <= quantity
  is enforced by the conditional UPDATEs in inventory_service and by a
  CHECK constraint.
- InventoryReservation: one hold per (order, product). Its status is what
  makes release/commit idempotent.
"""

import uuid

from marketpay.extensions import db


class InventoryItem(db.Model):
    __tablename__ = "inventory"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False
    )
    vendor_id = db.Column(
        db.String(36), db.ForeignKey("vendors.id"), nullable=False
    )
    quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.UniqueConstraint("product_id", "vendor_id", name="uq_inventory_product_vendor"),
        db.CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
        db.CheckConstraint("reserved <= quantity", name="ck_inventory_reserved_le_quantity"),
    )

    @property
    def available(self):
        return self.quantity - self.reserved

    def __repr__(self):
        return f"<InventoryItem product={self.product_id} {self.reserved}/{self.quantity}>"


class InventoryReservation(db.Model):
    __tablename__ = "inventory_reservations"

    STATUSES = ["held", "released", "committed"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False
    )
    vendor_id = db.Column(
        db.String(36), db.ForeignKey("vendors.id"), nullable=False
    )
    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="held"
    )  # held | released | committed
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<InventoryReservation order={self.order_id} qty={self.quantity} ({self.status})>"
