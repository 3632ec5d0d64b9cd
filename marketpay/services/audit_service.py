"""Financial audit trail.

Thin helper so every money-moving service writes audit rows the same way.
Rows are added to the current session; the caller owns the commit.
"""

import logging

from marketpay.extensions import db
from marketpay.models.audit import FinancialAuditLog

logger = logging.getLogger(__name__)


def log_financial_event(event_type, entity_type, entity_id, amount=None,
                        metadata=None, actor_id=None):
    """Append a FinancialAuditLog row (flushed, not committed)."""
    entry = FinancialAuditLog(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        amount=amount,
        actor_id=actor_id,
        metadata_=metadata or {},
    )
    db.session.add(entry)
    db.session.flush()
    logger.info(f"Audit {event_type} {entity_type}={entity_id} amount={amount}")
    return entry
