"""Commission models.

- CommissionConfig: a policy scoped to a vendor, a category or the whole
  platform. Either a percentage (`rate`) or a fixed amount.
- PlatformCommission: the computed split for one order (upsert target on
  order_id). pending until the escrow release records it.
"""

import uuid

from marketpay.extensions import db


class CommissionConfig(db.Model):
    __tablename__ = "commission_configs"

    SCOPES = ["vendor", "category", "platform"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    entity_type = db.Column(db.String(20), nullable=False)  # vendor | category | platform
    entity_id = db.Column(
        db.String(36), nullable=True
    )  # vendor id / category id, null for platform
    is_percentage = db.Column(db.Boolean, nullable=False, default=True)
    rate = db.Column(db.Numeric(6, 3), nullable=True)  # percent, e.g. 10.000
    fixed_amount = db.Column(db.Numeric(12, 2), nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        if self.is_percentage:
            return f"<CommissionConfig {self.entity_type} {self.rate}%>"
        return f"<CommissionConfig {self.entity_type} fixed={self.fixed_amount}>"


class PlatformCommission(db.Model):
    __tablename__ = "platform_commissions"

    STATUSES = ["pending", "recorded"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), unique=True, nullable=False
    )
    vendor_id = db.Column(
        db.String(36), db.ForeignKey("vendors.id"), nullable=False
    )
    commission_config_id = db.Column(
        db.String(36), db.ForeignKey("commission_configs.id"), nullable=True
    )
    base_amount = db.Column(db.Numeric(12, 2), nullable=False)
    commission_rate = db.Column(db.Numeric(6, 3), nullable=True)
    commission_amount = db.Column(db.Numeric(12, 2), nullable=False)
    vendor_amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="pending"
    )  # pending | recorded
    escrow_release_id = db.Column(
        db.String(36), db.ForeignKey("escrow_releases.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<PlatformCommission order={self.order_id} {self.commission_amount} ({self.status})>"
