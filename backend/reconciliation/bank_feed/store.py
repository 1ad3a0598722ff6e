"""
Bank Feed Persistence

Repositories over the local bank feed cache:
- BankTransactionStore: upsert, filtered reads and row locks on bank_feed_transactions
- SyncStateStore: sync watermark and last failure in bank_feed_sync_state
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, exists, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import (
    BankFeedSyncStateDB, BankFeedTransactionDB, BankTransactionLinkDB, utc_now
)
from reconciliation.bank_feed.client import BankFeedTransaction
from reconciliation.models import BankTransaction

logger = logging.getLogger(__name__)

DEFAULT_FEED_ID = "default"


def _db_to_bank_transaction(row: BankFeedTransactionDB) -> BankTransaction:
    return BankTransaction(
        external_id=row.external_id,
        amount=row.amount,
        side=row.side,
        status=row.status,
        settled_at=row.settled_at,
        label=row.label,
        reference=row.reference,
        note=row.note,
        web_url=row.web_url,
        currency=row.currency,
        upstream_transaction_id=row.upstream_transaction_id,
        operation_type=row.operation_type,
        emitted_at=row.emitted_at,
    )


def _feed_to_row(tx: BankFeedTransaction) -> Dict:
    return {
        "external_id": tx.external_id,
        "upstream_transaction_id": tx.upstream_transaction_id,
        "amount": tx.amount,
        "currency": tx.currency,
        "side": tx.side.value,
        "status": tx.status,
        "settled_at": tx.settled_at,
        "emitted_at": tx.emitted_at,
        "label": tx.label,
        "reference": tx.reference,
        "note": tx.note,
        "operation_type": tx.operation_type,
        "web_url": tx.web_url,
        "raw_data": tx.raw,
    }


class BankTransactionStore:
    """Repository for cached bank feed transactions"""

    UPDATABLE_COLUMNS = (
        "upstream_transaction_id", "amount", "currency", "side", "status",
        "settled_at", "emitted_at", "label", "reference", "note",
        "operation_type", "web_url", "raw_data",
    )

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== WRITE ====================

    async def upsert_many(self, transactions: Iterable[BankFeedTransaction]) -> int:
        """
        Insert or update rows keyed by external_id.

        Duplicate ids within one batch collapse to the last occurrence.
        Returns the number of distinct rows written.
        """
        rows_by_id = {}
        for tx in transactions:
            rows_by_id[tx.external_id] = _feed_to_row(tx)
        if not rows_by_id:
            return 0

        rows = list(rows_by_id.values())
        for row in rows:
            row["fetched_at"] = utc_now()

        stmt = insert(BankFeedTransactionDB).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[BankFeedTransactionDB.external_id],
            set_={
                **{col: stmt.excluded[col] for col in self.UPDATABLE_COLUMNS},
                "fetched_at": stmt.excluded.fetched_at,
            },
        )
        await self.session.execute(stmt)
        return len(rows)

    async def clear(self) -> int:
        """
        Delete cached rows that no link references.

        Linked rows stay so allocations keep their bank amount.
        """
        linked = exists().where(
            BankTransactionLinkDB.bank_transaction_external_id == BankFeedTransactionDB.external_id
        )
        result = await self.session.execute(
            delete(BankFeedTransactionDB).where(~linked)
        )
        return result.rowcount or 0

    # ==================== READ ====================

    async def list_transactions(
        self,
        status: Optional[str] = None,
        settled_from: Optional[datetime] = None,
        settled_to: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[BankTransaction]:
        """Cached transactions, most recently settled first"""
        query = select(BankFeedTransactionDB)
        if status:
            query = query.where(BankFeedTransactionDB.status == status)
        if settled_from:
            query = query.where(BankFeedTransactionDB.settled_at >= settled_from)
        if settled_to:
            query = query.where(BankFeedTransactionDB.settled_at <= settled_to)
        query = query.order_by(
            BankFeedTransactionDB.settled_at.desc().nulls_last(),
            BankFeedTransactionDB.external_id,
        )
        if limit:
            query = query.limit(limit)

        result = await self.session.execute(query)
        return [_db_to_bank_transaction(row) for row in result.scalars().all()]

    async def get(self, external_id: str) -> Optional[BankTransaction]:
        result = await self.session.execute(
            select(BankFeedTransactionDB).where(BankFeedTransactionDB.external_id == external_id)
        )
        row = result.scalar_one_or_none()
        return _db_to_bank_transaction(row) if row else None

    async def get_many(self, external_ids: Iterable[str]) -> Dict[str, BankTransaction]:
        ids = list(set(external_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(BankFeedTransactionDB).where(BankFeedTransactionDB.external_id.in_(ids))
        )
        return {row.external_id: _db_to_bank_transaction(row) for row in result.scalars().all()}

    async def lock_for_allocation(self, external_ids: Iterable[str]) -> Dict[str, BankTransaction]:
        """
        Lock bank rows until the surrounding transaction ends.

        Rows are locked in external_id order so concurrent batches over
        overlapping ids cannot deadlock.
        """
        ids = sorted(set(external_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(BankFeedTransactionDB)
            .where(BankFeedTransactionDB.external_id.in_(ids))
            .order_by(BankFeedTransactionDB.external_id)
            .with_for_update()
        )
        return {row.external_id: _db_to_bank_transaction(row) for row in result.scalars().all()}

    async def count(self) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(BankFeedTransactionDB)
        )
        return result.scalar() or 0

    async def newest(self) -> Optional[BankTransaction]:
        """Most recently settled cached transaction (the incremental sync watermark)"""
        result = await self.session.execute(
            select(BankFeedTransactionDB)
            .where(BankFeedTransactionDB.settled_at.is_not(None))
            .order_by(BankFeedTransactionDB.settled_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _db_to_bank_transaction(row) if row else None

    async def oldest(self) -> Optional[BankTransaction]:
        result = await self.session.execute(
            select(BankFeedTransactionDB)
            .where(BankFeedTransactionDB.settled_at.is_not(None))
            .order_by(BankFeedTransactionDB.settled_at.asc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _db_to_bank_transaction(row) if row else None


@dataclass
class SyncState:
    last_sync_at: Optional[datetime] = None
    last_synced_settled_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None


class SyncStateStore:
    """Repository for the bank feed sync watermark"""

    def __init__(self, session: AsyncSession, feed_id: str = DEFAULT_FEED_ID):
        self.session = session
        self.feed_id = feed_id

    async def _get_or_create(self) -> BankFeedSyncStateDB:
        row = await self.session.get(BankFeedSyncStateDB, self.feed_id)
        if row is None:
            row = BankFeedSyncStateDB(id=self.feed_id)
            self.session.add(row)
        return row

    async def get(self) -> Optional[SyncState]:
        row = await self.session.get(BankFeedSyncStateDB, self.feed_id)
        if row is None:
            return None
        return SyncState(
            last_sync_at=row.last_sync_at,
            last_synced_settled_at=row.last_synced_settled_at,
            last_error=row.last_error,
            last_error_at=row.last_error_at,
        )

    async def record_success(self, synced_at: datetime, newest_settled_at: Optional[datetime]):
        row = await self._get_or_create()
        row.last_sync_at = synced_at
        if newest_settled_at is not None:
            row.last_synced_settled_at = newest_settled_at
        row.last_error = None
        row.last_error_at = None
        await self.session.flush()

    async def record_failure(self, failed_at: datetime, message: str):
        row = await self._get_or_create()
        row.last_error = message
        row.last_error_at = failed_at
        await self.session.flush()

    async def reset(self):
        """Forget the watermark so the next sync is a full one"""
        await self.session.execute(
            delete(BankFeedSyncStateDB).where(BankFeedSyncStateDB.id == self.feed_id)
        )
