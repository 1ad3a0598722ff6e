from .connection import (
    get_engine, get_session_factory, session_scope, init_db, dispose_engine, Base
)

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    LedgerTransactionDB, BankFeedTransactionDB, BankTransactionLinkDB,
    BankFeedSyncStateDB,
    LedgerDirection, BankSide, BankTransactionStatus, DIRECTION_SIDE
)

__all__ = [
    'get_engine', 'get_session_factory', 'session_scope', 'init_db',
    'dispose_engine', 'Base',
    # Reconciliation models
    'LedgerTransactionDB', 'BankFeedTransactionDB', 'BankTransactionLinkDB',
    'BankFeedSyncStateDB',
    'LedgerDirection', 'BankSide', 'BankTransactionStatus', 'DIRECTION_SIDE',
]
