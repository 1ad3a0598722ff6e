"""
Bank Reconciliation Engine

Ties bank feed transactions to ledger transactions:
- Local cache of the upstream bank feed with throttled sync
- Split and combined allocations through links
- Direction, capacity and amount-match validation
- Audit trail for all operations
"""

from reconciliation.errors import (
    ReconciliationError,
    NotFoundError,
    ValidationFailedError,
    ExternalServiceError,
    ConfigurationError
)
from reconciliation.models import (
    LedgerTransaction,
    BankTransaction,
    Link,
    ApprovedAllocation,
    CandidateSelection,
    ProposedAllocation,
    ReconciliationState
)
from reconciliation.bank_feed import BankFeedClient, BankFeedCache
from reconciliation.allocation_ledger import AllocationLedger
from reconciliation.ledger_reader import LedgerReader
from reconciliation.validator import ReconciliationValidator
from reconciliation.orchestrator import MatchingOrchestrator, open_orchestrator

__all__ = [
    # Errors
    'ReconciliationError',
    'NotFoundError',
    'ValidationFailedError',
    'ExternalServiceError',
    'ConfigurationError',
    # Records
    'LedgerTransaction',
    'BankTransaction',
    'Link',
    'ApprovedAllocation',
    'CandidateSelection',
    'ProposedAllocation',
    'ReconciliationState',
    # Components
    'BankFeedClient',
    'BankFeedCache',
    'AllocationLedger',
    'LedgerReader',
    'ReconciliationValidator',
    'MatchingOrchestrator',
    'open_orchestrator',
]
