"""
Reconciliation Validator

Rules deciding whether bank transactions may be allocated to a ledger transaction:
- Direction: expense ledger transactions take negative (debit) amounts,
  income ledger transactions take positive (credit) amounts
- Positivity: every allocation moves a non-zero amount
- Capacity: a bank transaction is never allocated beyond its amount
- Amount match: links sum to the signed ledger amount within tolerance

Batch validation collects every error instead of stopping at the first.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from config import get_settings
from database.reconciliation_models import LedgerDirection, BankSide, BankTransactionStatus
from reconciliation.errors import NotFoundError
from reconciliation.models import (
    AllocationCandidate, AmountMatch, BankAllocation, BatchValidation, CapacityCheck,
    Discrepancy, DirectionCheck, LedgerTransaction, Link, ProposedAllocation,
    ReconciliationState, ZERO, money_to_float, to_money
)

logger = logging.getLogger(__name__)


class ReconciliationValidator:
    """
    Validation rules over the ledger and the allocation ledger.

    Args:
        ledger_reader: Source of ledger transactions
        allocation_ledger: Source of existing links and allocations
        tolerance: Allowed absolute difference for amount matching (0.00 = exact)
    """

    def __init__(self, ledger_reader, allocation_ledger, tolerance: Optional[Decimal] = None):
        self.ledger_reader = ledger_reader
        self.allocation_ledger = allocation_ledger
        if tolerance is None:
            tolerance = get_settings().RECONCILIATION_MATCH_TOLERANCE
        self.tolerance = to_money(tolerance)

    # ==================== PURE RULES ====================

    @staticmethod
    def to_signed(amount, side) -> Decimal:
        """Debit amounts are negative, credit amounts positive."""
        value = abs(to_money(amount))
        return -value if BankSide(side) == BankSide.DEBIT else value

    @staticmethod
    def validate_direction(direction, signed_amount) -> DirectionCheck:
        direction = LedgerDirection(direction)
        amount = to_money(signed_amount)

        if direction == LedgerDirection.EXPENSE and amount > ZERO:
            return DirectionCheck(False, "Ledger transaction is an EXPENSE but bank amount is POSITIVE (income)")
        if direction == LedgerDirection.INCOME and amount < ZERO:
            return DirectionCheck(False, "Ledger transaction is an INCOME but bank amount is NEGATIVE (expense)")
        if amount == ZERO:
            return DirectionCheck(False, f"Ledger transaction is an {direction.value.upper()} but bank amount is ZERO")
        return DirectionCheck(True, "Direction matches")

    @staticmethod
    def validate_amount_match(ledger_amount, direction, allocations: Iterable, tolerance=ZERO) -> AmountMatch:
        """Compare signed allocations against the signed ledger amount."""
        amount = abs(to_money(ledger_amount))
        expected = -amount if LedgerDirection(direction) == LedgerDirection.EXPENSE else amount
        actual = sum((to_money(a) for a in allocations), ZERO)
        difference = abs(actual - expected)
        return AmountMatch(
            is_valid=difference <= to_money(tolerance),
            expected=expected,
            actual=actual,
            difference=difference,
        )

    @staticmethod
    def evaluate_capacity(bank_total_amount, already_allocated, requested) -> CapacityCheck:
        bank_total = abs(to_money(bank_total_amount))
        allocated = to_money(already_allocated)
        requested = abs(to_money(requested))
        available = bank_total - allocated

        if requested > available:
            return CapacityCheck(
                can_link=False,
                available=available,
                allocated=allocated,
                message=f"Bank transaction only has {available} available, but trying to allocate {requested}",
                shortfall=requested - available,
            )
        return CapacityCheck(
            can_link=True,
            available=available,
            allocated=allocated,
            message="Sufficient funds available",
        )

    @classmethod
    def auto_allocate(cls, remaining_needed, candidates: List[AllocationCandidate]) -> List[Decimal]:
        """
        Greedy split of the remaining ledger amount over candidates, in order.

        Returns one signed amount per candidate. Direction-mismatched or
        exhausted candidates get zero so validation reports them.
        """
        remaining = max(abs(to_money(remaining_needed)), ZERO)
        amounts = []
        for candidate in candidates:
            if not candidate.direction_matches:
                amounts.append(ZERO)
                continue
            portion = max(min(remaining, candidate.available), ZERO)
            remaining -= portion
            amounts.append(cls.to_signed(portion, candidate.side) if portion else ZERO)
        return amounts

    def direction_issues(self, ledger_tx: LedgerTransaction, links: List[Link]) -> List[Dict[str, Any]]:
        issues = []
        for link in links:
            check = self.validate_direction(ledger_tx.direction, link.allocated_amount)
            if not check.is_valid:
                issues.append({
                    "link_id": link.id,
                    "external_id": link.bank_transaction_external_id,
                    "message": check.message,
                })
        return issues

    def derive_state(self, ledger_tx: LedgerTransaction, links: List[Link]) -> ReconciliationState:
        """Unlinked, partially allocated or fully reconciled; derived, never stored."""
        if not links:
            return ReconciliationState.UNLINKED
        match = self.validate_amount_match(
            ledger_tx.amount, ledger_tx.direction,
            [link.allocated_amount for link in links], self.tolerance
        )
        if match.is_valid and not self.direction_issues(ledger_tx, links):
            return ReconciliationState.FULLY_RECONCILED
        return ReconciliationState.PARTIALLY_ALLOCATED

    # ==================== LEDGER-BACKED CHECKS ====================

    async def check_capacity(self, external_id: str, bank_total_amount, requested_allocation) -> CapacityCheck:
        """Check that a bank transaction has room for another allocation."""
        allocation = await self.allocation_ledger.get_allocation_for_bank_tx(external_id)
        return self.evaluate_capacity(bank_total_amount, allocation.allocated, requested_allocation)

    async def validate_allocation_batch(
        self,
        ledger_transaction_id: str,
        proposed: List[ProposedAllocation]
    ) -> BatchValidation:
        """
        Validate a batch of allocations for one ledger transaction.

        Every check runs for every item; the result lists all errors.

        Raises:
            NotFoundError: ledger transaction does not exist
        """
        ledger_tx = await self.ledger_reader.get_ledger_transaction(ledger_transaction_id)
        if not ledger_tx:
            raise NotFoundError("Ledger transaction", ledger_transaction_id)

        errors: List[str] = []
        warnings: List[str] = []

        if not proposed:
            errors.append("No bank transactions selected")

        existing_links = await self.allocation_ledger.get_links_for_ledger_tx(ledger_transaction_id)
        existing_total = sum((link.allocated_amount for link in existing_links), ZERO)
        proposed_total = sum((item.allocated_amount for item in proposed), ZERO)

        # Direction
        for item in proposed:
            label = f"Bank transaction {item.external_id}"
            bank_check = self.validate_direction(
                ledger_tx.direction, self.to_signed(item.bank_amount, item.side)
            )
            if not bank_check.is_valid:
                errors.append(f"{label}: {bank_check.message}")
            elif item.allocated_amount != ZERO:
                allocation_check = self.validate_direction(ledger_tx.direction, item.allocated_amount)
                if not allocation_check.is_valid:
                    errors.append(f"{label}: allocated amount {item.allocated_amount} has the wrong sign")

        # Positivity
        for item in proposed:
            if abs(item.allocated_amount) <= ZERO:
                errors.append(
                    f"Bank transaction {item.external_id}: Allocated amount must be greater than zero "
                    f"(got {abs(item.allocated_amount)})"
                )

        # Capacity, cumulative when the batch repeats a bank transaction
        allocations: Dict[str, BankAllocation] = {}
        requested: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for item in proposed:
            if item.external_id not in allocations:
                allocations[item.external_id] = await self.allocation_ledger.get_allocation_for_bank_tx(
                    item.external_id
                )
            allocation = allocations[item.external_id]
            requested[item.external_id] += abs(item.allocated_amount)

            capacity = self.evaluate_capacity(item.bank_amount, allocation.allocated, requested[item.external_id])
            if not capacity.can_link:
                errors.append(f"Bank transaction {item.external_id}: {capacity.message}")

        # Warnings, once per bank transaction
        for external_id, allocation in allocations.items():
            item = next(p for p in proposed if p.external_id == external_id)
            if item.bank_status != BankTransactionStatus.COMPLETED.value:
                warnings.append(f"Bank transaction {external_id} is {item.bank_status}, not completed")
            other_ledgers = {
                link.ledger_transaction_id for link in allocation.links
                if link.ledger_transaction_id != ledger_transaction_id
            }
            if other_ledgers:
                warnings.append(
                    f"Bank transaction {external_id} is already allocated to "
                    f"{len(other_ledgers)} other ledger transaction(s)"
                )
            if any(link.ledger_transaction_id == ledger_transaction_id for link in allocation.links):
                warnings.append(f"Bank transaction {external_id} is already linked to this ledger transaction")

        # Combined amount
        amount_check = self.validate_amount_match(
            ledger_tx.amount,
            ledger_tx.direction,
            [link.allocated_amount for link in existing_links] + [item.allocated_amount for item in proposed],
            self.tolerance,
        )
        if not amount_check.is_valid:
            errors.append(
                f"Amount mismatch: Expected {amount_check.expected}, "
                f"but sum of allocated amounts is {amount_check.actual} "
                f"(difference: {amount_check.difference})"
            )

        summary = {
            "ledger_amount": money_to_float(ledger_tx.amount),
            "direction": ledger_tx.direction.value,
            "expected": money_to_float(amount_check.expected),
            "existing": money_to_float(existing_total),
            "proposed": money_to_float(proposed_total),
            "actual": money_to_float(amount_check.actual),
            "difference": money_to_float(amount_check.difference),
            "is_amount_match": amount_check.is_valid,
        }

        if errors:
            logger.info(f"Allocation batch for {ledger_transaction_id} rejected with {len(errors)} errors")

        return BatchValidation(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            summary=summary,
        )

    async def find_discrepancies(self) -> List[Discrepancy]:
        """Every linked ledger transaction whose links do not reconcile."""
        ledger_ids = await self.allocation_ledger.get_linked_ledger_transaction_ids()
        ledger_txs = await self.ledger_reader.get_many(ledger_ids)

        discrepancies = []
        for ledger_id in ledger_ids:
            links = await self.allocation_ledger.get_links_for_ledger_tx(ledger_id)
            actual = sum((link.allocated_amount for link in links), ZERO)
            ledger_tx = ledger_txs.get(ledger_id)

            if ledger_tx is None:
                discrepancies.append(Discrepancy(
                    ledger_transaction_id=ledger_id,
                    ledger_transaction=None,
                    expected_amount=None,
                    actual_allocated=actual,
                    difference=None,
                    is_amount_match=False,
                    direction_issues=[],
                    link_count=len(links),
                    message="Links reference a ledger transaction that no longer exists",
                ))
                continue

            amount_check = self.validate_amount_match(
                ledger_tx.amount, ledger_tx.direction,
                [link.allocated_amount for link in links], self.tolerance
            )
            issues = self.direction_issues(ledger_tx, links)
            if amount_check.is_valid and not issues:
                continue

            discrepancies.append(Discrepancy(
                ledger_transaction_id=ledger_id,
                ledger_transaction=ledger_tx,
                expected_amount=amount_check.expected,
                actual_allocated=amount_check.actual,
                difference=amount_check.difference,
                is_amount_match=amount_check.is_valid,
                direction_issues=issues,
                link_count=len(links),
            ))

        logger.info(f"Discrepancy scan: {len(discrepancies)} of {len(ledger_ids)} linked ledger transactions")
        return discrepancies

    async def get_validation_status(self, ledger_transaction_id: str) -> Optional[Dict[str, Any]]:
        """Validation status of one ledger transaction, None when it does not exist."""
        ledger_tx = await self.ledger_reader.get_ledger_transaction(ledger_transaction_id)
        if not ledger_tx:
            return None

        links = await self.allocation_ledger.get_links_for_ledger_tx(ledger_transaction_id)
        if not links:
            return {
                "has_links": False,
                "is_valid": True,
                "state": ReconciliationState.UNLINKED.value,
                "amount_match": None,
                "direction_issues": [],
                "link_count": 0,
            }

        amount_check = self.validate_amount_match(
            ledger_tx.amount, ledger_tx.direction,
            [link.allocated_amount for link in links], self.tolerance
        )
        issues = self.direction_issues(ledger_tx, links)
        return {
            "has_links": True,
            "is_valid": amount_check.is_valid and not issues,
            "state": self.derive_state(ledger_tx, links).value,
            "amount_match": amount_check.to_dict(),
            "direction_issues": issues,
            "link_count": len(links),
        }
