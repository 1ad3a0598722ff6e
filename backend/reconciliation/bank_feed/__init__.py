"""
Bank feed access: upstream client, local cache and its repositories.
"""

from .client import BankFeedClient, BankFeedTransaction
from .store import BankTransactionStore, SyncStateStore, SyncState
from .cache import BankFeedCache

__all__ = [
    "BankFeedClient",
    "BankFeedTransaction",
    "BankTransactionStore",
    "SyncStateStore",
    "SyncState",
    "BankFeedCache",
]
