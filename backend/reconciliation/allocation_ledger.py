"""
Allocation Ledger

Persistence of links between bank transactions and ledger transactions.
A link records a signed allocated amount; several links may share a bank
transaction (split) or a ledger transaction (combined payment).

The ledger performs no validation; ReconciliationValidator decides what may
be written.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import (
    BankFeedTransactionDB, BankTransactionLinkDB, generate_uuid, utc_now
)
from reconciliation.models import (
    BankAllocation, BankTransaction, Link, LinkStatus, ZERO, to_money
)

logger = logging.getLogger(__name__)


def _db_to_link(row: BankTransactionLinkDB, bank_settled_at=None) -> Link:
    return Link(
        id=row.id,
        ledger_transaction_id=row.ledger_transaction_id,
        bank_transaction_external_id=row.bank_transaction_external_id,
        allocated_amount=row.allocated_amount,
        created_at=row.created_at,
        created_by=row.created_by,
        bank_settled_at=bank_settled_at,
    )


class AllocationLedger:
    """Repository for bank transaction links"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _links_with_settlement(self):
        return (
            select(BankTransactionLinkDB, BankFeedTransactionDB.settled_at)
            .outerjoin(
                BankFeedTransactionDB,
                BankFeedTransactionDB.external_id == BankTransactionLinkDB.bank_transaction_external_id,
            )
        )

    # ==================== WRITE ====================

    async def create_link(
        self,
        ledger_transaction_id: str,
        bank_transaction: BankTransaction,
        allocated_amount: Decimal,
        actor_id: Optional[str] = None,
    ) -> Link:
        """Insert a link. Callers validate first."""
        row = BankTransactionLinkDB(
            id=generate_uuid(),
            ledger_transaction_id=ledger_transaction_id,
            bank_transaction_external_id=bank_transaction.external_id,
            allocated_amount=to_money(allocated_amount),
            created_at=utc_now(),
            created_by=actor_id,
        )
        self.session.add(row)
        await self.session.flush()

        logger.info(
            f"Link {row.id} created: {bank_transaction.external_id} -> "
            f"{ledger_transaction_id} ({row.allocated_amount})"
        )
        return _db_to_link(row, bank_transaction.settled_at)

    async def delete_link(self, link_id: str) -> bool:
        result = await self.session.execute(
            delete(BankTransactionLinkDB).where(BankTransactionLinkDB.id == link_id)
        )
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info(f"Link {link_id} deleted")
        return deleted

    # ==================== READ ====================

    async def get_link(self, link_id: str) -> Optional[Link]:
        result = await self.session.execute(
            self._links_with_settlement().where(BankTransactionLinkDB.id == link_id)
        )
        row = result.first()
        if not row:
            return None
        link_row, settled_at = row
        return _db_to_link(link_row, settled_at)

    async def get_links_for_ledger_tx(self, ledger_transaction_id: str) -> List[Link]:
        """Links of one ledger transaction, most recent settlement first"""
        result = await self.session.execute(
            self._links_with_settlement()
            .where(BankTransactionLinkDB.ledger_transaction_id == ledger_transaction_id)
            .order_by(
                BankFeedTransactionDB.settled_at.desc().nulls_last(),
                BankTransactionLinkDB.created_at.desc(),
            )
        )
        return [_db_to_link(link_row, settled_at) for link_row, settled_at in result.all()]

    async def get_allocation_for_bank_tx(self, external_id: str) -> BankAllocation:
        """
        How much of a bank transaction is allocated.

        allocated sums absolute link amounts; an uncached bank transaction
        reports a bank amount of zero.
        """
        amount_result = await self.session.execute(
            select(BankFeedTransactionDB.amount).where(BankFeedTransactionDB.external_id == external_id)
        )
        bank_amount = to_money(amount_result.scalar_one_or_none())

        result = await self.session.execute(
            self._links_with_settlement()
            .where(BankTransactionLinkDB.bank_transaction_external_id == external_id)
            .order_by(BankTransactionLinkDB.created_at)
        )
        links = [_db_to_link(link_row, settled_at) for link_row, settled_at in result.all()]
        allocated = sum((abs(link.allocated_amount) for link in links), ZERO)

        return BankAllocation(
            external_id=external_id,
            bank_amount=abs(bank_amount),
            allocated=allocated,
            links=links,
        )

    async def get_allocated_totals(self, external_ids: Iterable[str]) -> Dict[str, Decimal]:
        """Absolute allocated total per bank transaction, in one grouped query"""
        ids = list(set(external_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(
                BankTransactionLinkDB.bank_transaction_external_id,
                func.sum(func.abs(BankTransactionLinkDB.allocated_amount)),
            )
            .where(BankTransactionLinkDB.bank_transaction_external_id.in_(ids))
            .group_by(BankTransactionLinkDB.bank_transaction_external_id)
        )
        totals = {external_id: ZERO for external_id in ids}
        for external_id, total in result.all():
            totals[external_id] = to_money(total)
        return totals

    async def get_links_for_many_bank_tx(self, external_ids: Iterable[str]) -> Dict[str, LinkStatus]:
        """Link status for every requested bank transaction, in one query"""
        ids = list(dict.fromkeys(external_ids))
        statuses = {external_id: LinkStatus() for external_id in ids}
        if not ids:
            return statuses

        result = await self.session.execute(
            select(
                BankTransactionLinkDB.bank_transaction_external_id,
                BankTransactionLinkDB.id,
                BankTransactionLinkDB.ledger_transaction_id,
            )
            .where(BankTransactionLinkDB.bank_transaction_external_id.in_(ids))
            .order_by(BankTransactionLinkDB.created_at)
        )

        grouped = defaultdict(list)
        for external_id, link_id, ledger_transaction_id in result.all():
            grouped[external_id].append((link_id, ledger_transaction_id))

        for external_id, rows in grouped.items():
            ledger_ids = list(dict.fromkeys(ledger_id for _, ledger_id in rows))
            statuses[external_id] = LinkStatus(
                is_linked=True,
                linked_ledger_ids=ledger_ids,
                link_ids=[link_id for link_id, _ in rows],
            )
        return statuses

    async def get_linked_ledger_transaction_ids(self) -> List[str]:
        """Every ledger transaction id with at least one link"""
        result = await self.session.execute(
            select(BankTransactionLinkDB.ledger_transaction_id)
            .distinct()
            .order_by(BankTransactionLinkDB.ledger_transaction_id)
        )
        return [row[0] for row in result.all()]
