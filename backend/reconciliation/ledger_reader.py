"""
Read-only access to ledger transactions owned by the accounting subsystem.
"""

from typing import Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import LedgerTransactionDB
from reconciliation.models import LedgerTransaction


def _db_to_ledger_transaction(row: LedgerTransactionDB) -> LedgerTransaction:
    return LedgerTransaction(
        id=row.id,
        direction=row.direction,
        amount=row.amount,
        status=row.status,
        description=row.description,
        transaction_date=row.date,
    )


class LedgerReader:
    """Repository for ledger transactions (reads only)"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_ledger_transaction(self, ledger_transaction_id: str) -> Optional[LedgerTransaction]:
        result = await self.session.execute(
            select(LedgerTransactionDB).where(LedgerTransactionDB.id == ledger_transaction_id)
        )
        row = result.scalar_one_or_none()
        return _db_to_ledger_transaction(row) if row else None

    async def get_many(self, ledger_transaction_ids: Iterable[str]) -> Dict[str, LedgerTransaction]:
        """Ledger transactions by id; unknown ids are absent from the result"""
        ids = list(set(ledger_transaction_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(LedgerTransactionDB).where(LedgerTransactionDB.id.in_(ids))
        )
        return {row.id: _db_to_ledger_transaction(row) for row in result.scalars().all()}
