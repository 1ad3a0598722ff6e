"""
Bank Feed Cache

Keeps a local copy of the upstream bank feed so candidate searches never
wait on the bank:
- sync(): incremental fetch + idempotent upsert by external id
- auto_sync(): throttled sync, falls back to the cache when upstream is down
- get_cached() / get_cached_transaction() / get_cache_stats() / clear_cache()

Each page is written in its own unit of work, so a failure mid-sync keeps
the pages already stored.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from config import get_settings
from database.connection import session_scope
from database.reconciliation_models import BankTransactionStatus, utc_now
from reconciliation.audit import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.bank_feed.client import SERVICE_NAME, BankFeedClient
from reconciliation.bank_feed.store import BankTransactionStore, SyncStateStore
from reconciliation.errors import ExternalServiceError
from reconciliation.models import AutoSyncOutcome, BankTransaction, SyncResult, iso_or_none
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)


def _as_timedelta(value: Union[timedelta, int, float]) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


class BankFeedCache:
    """
    Local cache of the upstream bank feed.

    Args:
        client: Upstream client
        session_factory: async_sessionmaker; defaults to the pooled one
        clock: Returns the current aware datetime
        auto_sync_threshold: Minimum age of the last sync before auto_sync hits upstream
        bank_account_id: Account to sync; the organization's first account when unset
        store_factory / state_store_factory: Repository constructors taking a session
    """

    def __init__(
        self,
        client: BankFeedClient,
        session_factory=None,
        clock: Callable[[], datetime] = utc_now,
        auto_sync_threshold: Optional[Union[timedelta, int, float]] = None,
        bank_account_id: Optional[str] = None,
        store_factory=BankTransactionStore,
        state_store_factory=SyncStateStore,
    ):
        if auto_sync_threshold is None:
            auto_sync_threshold = get_settings().BANK_FEED_AUTO_SYNC_THRESHOLD_SECONDS
        self.client = client
        self.session_factory = session_factory
        self.clock = clock
        self.auto_sync_threshold = _as_timedelta(auto_sync_threshold)
        self.bank_account_id = bank_account_id
        self.store_factory = store_factory
        self.state_store_factory = state_store_factory
        self._sync_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings=None, **overrides) -> "BankFeedCache":
        settings = settings or get_settings()
        kwargs = dict(
            client=BankFeedClient.from_settings(settings),
            auto_sync_threshold=settings.BANK_FEED_AUTO_SYNC_THRESHOLD_SECONDS,
            bank_account_id=settings.BANK_FEED_BANK_ACCOUNT_ID or None,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def _session(self):
        return session_scope(self.session_factory)

    # ==================== SYNC ====================

    async def _resolve_bank_account(self) -> str:
        if self.bank_account_id:
            return self.bank_account_id

        organization = await self.client.get_organization()
        accounts = organization.get("bank_accounts") or []
        if not accounts:
            raise ExternalServiceError(
                SERVICE_NAME, LookupError("No bank accounts found in organization")
            )
        return accounts[0]["id"]

    async def sync(self, force: bool = False) -> SyncResult:
        """
        Pull new transactions from upstream into the cache.

        Args:
            force: Ignore the watermark and refetch everything

        Raises:
            ExternalServiceError: upstream unreachable or failing
        """
        async with self._sync_lock:
            async with self._session() as session:
                newest = None if force else await self.store_factory(session).newest()

            sync_from = newest.settled_at if newest else None
            skip_id = newest.external_id if newest else None
            newest_settled = sync_from
            synced = 0
            pages = 0

            logger.info(f"Bank feed sync started (from={iso_or_none(sync_from)}, force={force})")

            try:
                filters: Dict[str, Any] = {
                    "bank_account_id": await self._resolve_bank_account(),
                    "status": [BankTransactionStatus.COMPLETED.value],
                }
                if sync_from is not None:
                    filters["settled_at_from"] = sync_from.isoformat()

                async for page in self.client.iter_transaction_pages(filters):
                    rows = [tx for tx in page if tx.external_id != skip_id]
                    async with self._session() as session:
                        synced += await self.store_factory(session).upsert_many(rows)
                    pages += 1
                    for tx in rows:
                        if tx.settled_at and (newest_settled is None or tx.settled_at > newest_settled):
                            newest_settled = tx.settled_at
            except ExternalServiceError as e:
                await self._record_failure(e, synced)
                raise

            finished_at = self.clock()
            async with self._session() as session:
                total = await self.store_factory(session).count()
                await self.state_store_factory(session).record_success(finished_at, newest_settled)

        result = SyncResult(synced=synced, total=total, from_=sync_from, to=finished_at, pages=pages)
        logger.info(f"Bank feed sync completed: {synced} synced, {total} cached")
        log_reconciliation_event(
            ReconciliationAuditEvent.SYNC_COMPLETED, None, result.to_dict()
        )
        return result

    async def _record_failure(self, error: ExternalServiceError, synced: int):
        logger.error(f"Bank feed sync failed after {synced} transactions: {error}")
        async with self._session() as session:
            await self.state_store_factory(session).record_failure(self.clock(), str(error))
        log_reconciliation_event(
            ReconciliationAuditEvent.SYNC_FAILED, None,
            {"error": str(error), "synced_before_failure": synced}
        )
        capture_exception(error, service=SERVICE_NAME, synced_before_failure=synced)

    async def get_sync_state(self):
        async with self._session() as session:
            return await self.state_store_factory(session).get()

    async def auto_sync(self, threshold: Optional[Union[timedelta, int, float]] = None) -> AutoSyncOutcome:
        """
        Sync only when the last successful sync is older than the threshold.

        Upstream failures fall back to the cache when a previous sync exists.
        """
        threshold = self.auto_sync_threshold if threshold is None else _as_timedelta(threshold)
        state = await self.get_sync_state()
        last_sync_at = state.last_sync_at if state else None

        if last_sync_at is not None and self.clock() - last_sync_at < threshold:
            return AutoSyncOutcome(synced=False, used_cache=True, last_sync_at=last_sync_at)

        try:
            result = await self.sync()
        except ExternalServiceError as e:
            if last_sync_at is None:
                raise
            logger.warning(f"Auto-sync failed, serving cache from {last_sync_at.isoformat()}: {e}")
            return AutoSyncOutcome(
                synced=False, used_cache=True, last_sync_at=last_sync_at, error=str(e)
            )

        return AutoSyncOutcome(synced=True, used_cache=False, result=result, last_sync_at=result.to)

    # ==================== READ ====================

    async def get_cached(
        self,
        status: Optional[str] = None,
        settled_from: Optional[datetime] = None,
        settled_to: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[BankTransaction]:
        """Cached transactions, most recently settled first."""
        async with self._session() as session:
            return await self.store_factory(session).list_transactions(
                status=status, settled_from=settled_from, settled_to=settled_to, limit=limit
            )

    async def get_cached_transaction(self, external_id: str) -> Optional[BankTransaction]:
        async with self._session() as session:
            return await self.store_factory(session).get(external_id)

    async def get_cache_stats(self) -> Dict[str, Any]:
        async with self._session() as session:
            store = self.store_factory(session)
            total = await store.count()
            oldest = await store.oldest()
            newest = await store.newest()
            state = await self.state_store_factory(session).get()

        return {
            "total_cached": total,
            "last_sync_at": iso_or_none(state.last_sync_at) if state else None,
            "last_error": state.last_error if state else None,
            "oldest": iso_or_none(oldest.settled_at) if oldest else None,
            "newest": iso_or_none(newest.settled_at) if newest else None,
        }

    async def clear_cache(self) -> int:
        """Drop unlinked cached rows and the watermark; the next sync is a full one."""
        async with self._sync_lock:
            async with self._session() as session:
                deleted = await self.store_factory(session).clear()
                await self.state_store_factory(session).reset()

        logger.info(f"Bank feed cache cleared ({deleted} rows)")
        log_reconciliation_event(ReconciliationAuditEvent.CACHE_CLEARED, None, {"deleted": deleted})
        return deleted

    async def test_connection(self) -> Dict[str, Any]:
        return await self.client.test_connection()
