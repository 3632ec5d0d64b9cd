"""Webhook processing log (idempotency ledger).

Every inbound provider webhook is recorded by its provider-assigned event
id. A row with status "success" makes redelivery a no-op. A "failed" row
does not block redelivery: the provider's retry reprocesses the event and
the row is reused.
"""

import uuid

from marketpay.extensions import db


class WebhookProcessingLog(db.Model):
    __tablename__ = "webhook_processing_log"

    STATUSES = ["processing", "success", "failed"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    webhook_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # provider event id
    provider = db.Column(db.String(30), nullable=False)  # tj | vesicash
    event_type = db.Column(db.String(255), nullable=True)  # e.g. "payment.completed"
    status = db.Column(
        db.String(20), nullable=False, default="processing"
    )  # processing | success | failed
    attempts = db.Column(db.Integer, nullable=False, default=1)
    error_message = db.Column(db.Text, nullable=True)
    processing_duration_ms = db.Column(db.Integer, nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_completed(self):
        return self.status == "success"

    def __repr__(self):
        return f"<WebhookProcessingLog {self.webhook_id} ({self.status})>"
