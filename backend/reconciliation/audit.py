"""
Reconciliation audit trail.

Events are emitted as structured log records; the JSON formatter in
logging_config carries the extra fields through to the log sink.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger("reconciliation.audit")


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    SYNC_COMPLETED = "reconciliation.sync_completed"
    SYNC_FAILED = "reconciliation.sync_failed"
    CACHE_CLEARED = "reconciliation.cache_cleared"
    CANDIDATES_FOUND = "reconciliation.candidates_found"
    LINKS_COMMITTED = "reconciliation.links_committed"
    VALIDATION_FAILED = "reconciliation.validation_failed"
    LINK_REMOVED = "reconciliation.link_removed"


def log_reconciliation_event(
    event_type: str,
    ledger_transaction_id: Optional[str],
    details: Dict[str, Any],
    link_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "ledger_transaction_id": ledger_transaction_id,
        "link_id": link_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)
