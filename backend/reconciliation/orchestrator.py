"""
Matching Orchestrator

Operator-facing reconciliation operations:
- search_candidates: bank transactions that could settle a ledger transaction
- commit_links: validate and persist a batch of allocations
- remove_link: drop one allocation
- find_discrepancies / get_validation_status: reconciliation health

One orchestrator works inside one AsyncSession (unit of work). Results are
plain dicts, ready for any transport.
"""

import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import session_scope
from database.reconciliation_models import BankTransactionStatus, LedgerDirection
from reconciliation.allocation_ledger import AllocationLedger
from reconciliation.audit import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.bank_feed.cache import BankFeedCache
from reconciliation.bank_feed.store import BankTransactionStore
from reconciliation.errors import NotFoundError
from reconciliation.ledger_reader import LedgerReader
from reconciliation.models import (
    AllocationCandidate, ApprovedAllocation, CandidateSelection, ProposedAllocation,
    ZERO, money_to_float
)
from reconciliation.validator import ReconciliationValidator

logger = logging.getLogger(__name__)

Selection = Union[CandidateSelection, Dict[str, Any]]


class MatchingOrchestrator:
    """
    Coordinates the bank feed cache, the allocation ledger and the validator.

    Args:
        db: Session of the current unit of work
        bank_feed_cache: Shared bank feed cache
        tolerance: Amount match tolerance (configuration default when None)
    """

    def __init__(
        self,
        db: AsyncSession,
        bank_feed_cache: BankFeedCache,
        tolerance: Optional[Decimal] = None
    ):
        self.db = db
        self.bank_feed_cache = bank_feed_cache
        self.ledger_reader = LedgerReader(db)
        self.allocation_ledger = AllocationLedger(db)
        self.bank_store = BankTransactionStore(db)
        self.validator = ReconciliationValidator(self.ledger_reader, self.allocation_ledger, tolerance)

    async def _get_ledger_transaction(self, ledger_transaction_id: str):
        ledger_tx = await self.ledger_reader.get_ledger_transaction(ledger_transaction_id)
        if not ledger_tx:
            raise NotFoundError("Ledger transaction", ledger_transaction_id)
        return ledger_tx

    # ==================== SEARCH ====================

    async def search_candidates(
        self,
        ledger_transaction_id: str,
        include_direction_mismatches: bool = False
    ) -> Dict[str, Any]:
        """
        Find bank transactions that could be allocated to a ledger transaction.

        Refreshes the cache first (throttled). Direction-mismatched bank
        transactions are hidden unless include_direction_mismatches is set.
        """
        ledger_tx = await self._get_ledger_transaction(ledger_transaction_id)

        sync_outcome = await self.bank_feed_cache.auto_sync()
        bank_txs = await self.bank_feed_cache.get_cached(status=BankTransactionStatus.COMPLETED.value)

        external_ids = [tx.external_id for tx in bank_txs]
        link_statuses = await self.allocation_ledger.get_links_for_many_bank_tx(external_ids)
        totals = await self.allocation_ledger.get_allocated_totals(external_ids)

        candidates = []
        hidden = 0
        for tx in bank_txs:
            direction = self.validator.validate_direction(ledger_tx.direction, tx.signed_amount)
            if not direction.is_valid and not include_direction_mismatches:
                hidden += 1
                continue

            status = link_statuses.get(tx.external_id)
            allocated = totals.get(tx.external_id, ZERO)
            available = tx.amount - allocated

            candidate = tx.to_dict()
            candidate.update({
                "direction_matches": direction.is_valid,
                "direction_message": direction.message,
                "total_allocated": money_to_float(allocated),
                "available_amount": money_to_float(available),
                "is_fully_allocated": available <= ZERO,
                "is_linked": bool(status and status.is_linked),
                "is_linked_to_this": bool(status and ledger_transaction_id in status.linked_ledger_ids),
                "linked_ledger_ids": list(status.linked_ledger_ids) if status else [],
                "link_ids": list(status.link_ids) if status else [],
            })
            candidates.append((tx.settled_at, candidate))

        # Most recent settlement first, unsettled last
        candidates.sort(key=lambda item: item[0].timestamp() if item[0] else float("-inf"), reverse=True)

        log_reconciliation_event(
            ReconciliationAuditEvent.CANDIDATES_FOUND,
            ledger_transaction_id,
            {
                "candidates_count": len(candidates),
                "hidden_direction_mismatches": hidden,
                "used_cache": sync_outcome.used_cache,
            }
        )

        return {
            "ledger_transaction": ledger_tx.to_dict(),
            "candidates": [candidate for _, candidate in candidates],
            "hidden_direction_mismatches": hidden,
            "sync_info": sync_outcome.to_dict(),
        }

    # ==================== COMMIT ====================

    async def commit_links(
        self,
        ledger_transaction_id: str,
        selections: List[Selection],
        actor_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Validate and persist allocations of the selected bank transactions.

        Explicit allocated_amount values take the bank side's sign. Selections
        without one share what is still needed, greedily and in order.
        Nothing is written when validation fails.

        Raises:
            NotFoundError: ledger transaction does not exist
        """
        ledger_tx = await self._get_ledger_transaction(ledger_transaction_id)
        selections = [
            s if isinstance(s, CandidateSelection) else CandidateSelection.from_dict(s)
            for s in selections
        ]

        # Locks hold until commit/rollback, so capacity cannot change under us
        bank_txs = await self.bank_store.lock_for_allocation(s.external_id for s in selections)
        missing = list(dict.fromkeys(s.external_id for s in selections if s.external_id not in bank_txs))
        selections = [s for s in selections if s.external_id in bank_txs]

        existing_links = await self.allocation_ledger.get_links_for_ledger_tx(ledger_transaction_id)
        existing_total = sum((link.allocated_amount for link in existing_links), ZERO)
        sign = Decimal(-1) if ledger_tx.direction == LedgerDirection.EXPENSE else Decimal(1)
        remaining_needed = max((ledger_tx.expected_signed_amount - existing_total) * sign, ZERO)

        # Explicit amounts are signed from the bank side
        totals = await self.allocation_ledger.get_allocated_totals(bank_txs.keys())
        consumed: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        amounts: Dict[int, Decimal] = {}
        for index, selection in enumerate(selections):
            if selection.allocated_amount is not None:
                bank_tx = bank_txs[selection.external_id]
                amounts[index] = self.validator.to_signed(selection.allocated_amount, bank_tx.side)
                remaining_needed = max(remaining_needed - abs(amounts[index]), ZERO)
                consumed[selection.external_id] += abs(amounts[index])

        # Auto portions count against the bank transaction as they are handed out
        for index, selection in enumerate(selections):
            if index in amounts:
                continue
            bank_tx = bank_txs[selection.external_id]
            amount = self.validator.auto_allocate(remaining_needed, [AllocationCandidate(
                external_id=bank_tx.external_id,
                side=bank_tx.side,
                available=bank_tx.amount - totals.get(bank_tx.external_id, ZERO) - consumed[bank_tx.external_id],
                direction_matches=bank_tx.side == ledger_tx.expected_side,
            )])[0]
            amounts[index] = amount
            remaining_needed = max(remaining_needed - abs(amount), ZERO)
            consumed[bank_tx.external_id] += abs(amount)

        proposed = []
        for index, selection in enumerate(selections):
            bank_tx = bank_txs[selection.external_id]
            amount = amounts[index]
            proposed.append(ProposedAllocation(
                external_id=bank_tx.external_id,
                bank_amount=bank_tx.amount,
                side=bank_tx.side,
                allocated_amount=amount,
                bank_status=bank_tx.status,
            ))

        validation = await self.validator.validate_allocation_batch(ledger_transaction_id, proposed)
        errors = [f"Bank transaction {external_id} not found" for external_id in missing]
        errors.extend(validation.errors)

        if errors:
            await self.db.rollback()
            log_reconciliation_event(
                ReconciliationAuditEvent.VALIDATION_FAILED,
                ledger_transaction_id,
                {"errors": errors, "summary": validation.summary},
                actor=actor_id or "system"
            )
            return {
                "success": False,
                "error": "Validation failed",
                "errors": errors,
                "warnings": validation.warnings,
                "summary": validation.summary,
            }

        linked = []
        failures = []
        for item in proposed:
            approved = ApprovedAllocation(
                ledger_transaction_id=ledger_transaction_id,
                external_id=item.external_id,
                direction=ledger_tx.direction,
                allocated_amount=item.allocated_amount,
            )
            try:
                async with self.db.begin_nested():
                    link = await self.allocation_ledger.create_link(
                        approved.ledger_transaction_id,
                        bank_txs[approved.external_id],
                        approved.allocated_amount,
                        actor_id,
                    )
            except SQLAlchemyError as e:
                logger.error(f"Failed to link {approved.external_id} to {ledger_transaction_id}: {e}")
                failures.append({"external_id": approved.external_id, "error": str(e)})
                continue
            linked.append(link)

        await self.db.commit()

        state = self.validator.derive_state(ledger_tx, existing_links + linked)
        log_reconciliation_event(
            ReconciliationAuditEvent.LINKS_COMMITTED,
            ledger_transaction_id,
            {
                "linked": [link.bank_transaction_external_id for link in linked],
                "failed": [failure["external_id"] for failure in failures],
                "state": state.value,
            },
            actor=actor_id or "system"
        )

        return {
            "success": True,
            "linked": [link.to_dict() for link in linked],
            "errors": failures,
            "warnings": validation.warnings,
            "validation": validation.summary,
            "state": state.value,
        }

    async def remove_link(self, link_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Delete one link without re-validating the remaining ones.

        Raises:
            NotFoundError: link does not exist
        """
        link = await self.allocation_ledger.get_link(link_id)
        if not link or not await self.allocation_ledger.delete_link(link_id):
            raise NotFoundError("Link", link_id)

        await self.db.commit()

        status = await self.validator.get_validation_status(link.ledger_transaction_id)
        state = status["state"] if status else None

        log_reconciliation_event(
            ReconciliationAuditEvent.LINK_REMOVED,
            link.ledger_transaction_id,
            {"external_id": link.bank_transaction_external_id, "state": state},
            link_id=link_id,
            actor=actor_id or "system"
        )

        return {
            "success": True,
            "removed": link.to_dict(),
            "ledger_transaction_id": link.ledger_transaction_id,
            "state": state,
        }

    # ==================== HEALTH ====================

    async def find_discrepancies(self) -> List[Dict[str, Any]]:
        discrepancies = await self.validator.find_discrepancies()
        return [discrepancy.to_dict() for discrepancy in discrepancies]

    async def get_validation_status(self, ledger_transaction_id: str) -> Dict[str, Any]:
        """
        Raises:
            NotFoundError: ledger transaction does not exist
        """
        status = await self.validator.get_validation_status(ledger_transaction_id)
        if status is None:
            raise NotFoundError("Ledger transaction", ledger_transaction_id)
        return status


@asynccontextmanager
async def open_orchestrator(
    bank_feed_cache: BankFeedCache,
    session_factory=None,
    tolerance: Optional[Decimal] = None
) -> AsyncIterator[MatchingOrchestrator]:
    """Orchestrator bound to a fresh unit of work."""
    async with session_scope(session_factory) as db:
        yield MatchingOrchestrator(db, bank_feed_cache, tolerance)
