"""Financial audit log model.

Append-only record of every money-moving event (commission calculated,
escrow released, payout initiated/completed/failed). Rows are never
updated or deleted.
"""

import uuid

from marketpay.extensions import db


class FinancialAuditLog(db.Model):
    __tablename__ = "financial_audit_logs"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_type = db.Column(db.String(100), nullable=False)  # e.g. "escrow_released"
    entity_type = db.Column(db.String(50), nullable=False)  # order | vendor_payout
    entity_id = db.Column(db.String(36), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=True)
    actor_id = db.Column(db.String(36), nullable=True)  # null: system-initiated
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid clashing with Model.metadata
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<FinancialAuditLog {self.event_type} {self.entity_type}={self.entity_id}>"
