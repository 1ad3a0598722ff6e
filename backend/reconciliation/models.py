"""
Reconciliation Domain Types

Plain records passed between the bank feed cache, the allocation ledger,
the validator and the orchestrator. Every record exposes to_dict() returning
JSON-serializable data.

Amounts are Decimal values quantized to cents.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from database.reconciliation_models import (
    LedgerDirection, BankSide, BankTransactionStatus, DIRECTION_SIDE
)
from reconciliation.errors import ValidationFailedError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Amount = Union[Decimal, int, float, str]


def to_money(value: Optional[Amount]) -> Decimal:
    """Convert any numeric input to a cent-quantized Decimal (None -> 0.00)."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        # str() first so floats like 0.1 do not carry binary noise
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_to_float(value: Decimal) -> float:
    return float(to_money(value))


def iso_or_none(value: Optional[Union[date, datetime]]) -> Optional[str]:
    return value.isoformat() if value else None


class ReconciliationState(str, Enum):
    """Derived reconciliation state of a ledger transaction (never stored)"""
    UNLINKED = "unlinked"
    PARTIALLY_ALLOCATED = "partially_allocated"
    FULLY_RECONCILED = "fully_reconciled"


# ==================== LEDGER & BANK RECORDS ====================

@dataclass
class LedgerTransaction:
    """Ledger transaction as exposed by the accounting subsystem."""
    id: str
    direction: LedgerDirection
    amount: Decimal
    status: str
    description: Optional[str] = None
    transaction_date: Optional[date] = None

    def __post_init__(self):
        self.direction = LedgerDirection(self.direction)
        self.amount = to_money(self.amount)

    @property
    def expected_signed_amount(self) -> Decimal:
        """Total the links must sum to: negative for expenses, positive for income."""
        if self.direction == LedgerDirection.EXPENSE:
            return -abs(self.amount)
        return abs(self.amount)

    @property
    def expected_side(self) -> BankSide:
        return DIRECTION_SIDE[self.direction]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction.value,
            "amount": money_to_float(self.amount),
            "expected_signed_amount": money_to_float(self.expected_signed_amount),
            "status": self.status,
            "description": self.description,
            "date": iso_or_none(self.transaction_date),
        }


@dataclass
class BankTransaction:
    """Cached bank feed transaction (unsigned amount plus side)."""
    external_id: str
    amount: Decimal
    side: BankSide
    status: str
    settled_at: Optional[datetime] = None
    label: Optional[str] = None
    reference: Optional[str] = None
    note: Optional[str] = None
    web_url: Optional[str] = None
    currency: Optional[str] = None
    upstream_transaction_id: Optional[str] = None
    operation_type: Optional[str] = None
    emitted_at: Optional[datetime] = None

    def __post_init__(self):
        self.side = BankSide(self.side)
        self.amount = abs(to_money(self.amount))

    @property
    def signed_amount(self) -> Decimal:
        if self.side == BankSide.DEBIT:
            return -self.amount
        return self.amount

    @property
    def is_completed(self) -> bool:
        return self.status == BankTransactionStatus.COMPLETED.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "upstream_transaction_id": self.upstream_transaction_id,
            "amount": money_to_float(self.amount),
            "signed_amount": money_to_float(self.signed_amount),
            "side": self.side.value,
            "currency": self.currency,
            "status": self.status,
            "settled_at": iso_or_none(self.settled_at),
            "emitted_at": iso_or_none(self.emitted_at),
            "label": self.label,
            "reference": self.reference,
            "note": self.note,
            "operation_type": self.operation_type,
            "web_url": self.web_url,
        }


@dataclass
class Link:
    """Persisted allocation of a bank transaction to a ledger transaction."""
    id: str
    ledger_transaction_id: str
    bank_transaction_external_id: str
    allocated_amount: Decimal
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    bank_settled_at: Optional[datetime] = None

    def __post_init__(self):
        self.allocated_amount = to_money(self.allocated_amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ledger_transaction_id": self.ledger_transaction_id,
            "bank_transaction_external_id": self.bank_transaction_external_id,
            "allocated_amount": money_to_float(self.allocated_amount),
            "created_at": iso_or_none(self.created_at),
            "created_by": self.created_by,
            "bank_settled_at": iso_or_none(self.bank_settled_at),
        }


# ==================== AGGREGATES ====================

@dataclass
class BankAllocation:
    """How much of a bank transaction is already allocated."""
    external_id: str
    bank_amount: Decimal
    allocated: Decimal
    links: List[Link] = field(default_factory=list)

    @property
    def available(self) -> Decimal:
        return self.bank_amount - self.allocated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "bank_amount": money_to_float(self.bank_amount),
            "allocated": money_to_float(self.allocated),
            "available": money_to_float(self.available),
            "links": [link.to_dict() for link in self.links],
        }


@dataclass
class LinkStatus:
    """Link status of one bank transaction in a batched lookup."""
    is_linked: bool = False
    linked_ledger_ids: List[str] = field(default_factory=list)
    link_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_linked": self.is_linked,
            "linked_ledger_ids": list(self.linked_ledger_ids),
            "link_ids": list(self.link_ids),
        }


# ==================== CHECK RESULTS ====================

@dataclass
class DirectionCheck:
    is_valid: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"is_valid": self.is_valid, "message": self.message}


@dataclass
class AmountMatch:
    is_valid: bool
    expected: Decimal
    actual: Decimal
    difference: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "expected": money_to_float(self.expected),
            "actual": money_to_float(self.actual),
            "difference": money_to_float(self.difference),
        }


@dataclass
class CapacityCheck:
    can_link: bool
    available: Decimal
    allocated: Decimal
    message: str
    shortfall: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_link": self.can_link,
            "available": money_to_float(self.available),
            "allocated": money_to_float(self.allocated),
            "shortfall": money_to_float(self.shortfall),
            "message": self.message,
        }


# ==================== ALLOCATION INPUTS ====================

@dataclass
class AllocationCandidate:
    """A bank transaction offered to the auto-split, in caller order."""
    external_id: str
    side: BankSide
    available: Decimal
    direction_matches: bool

    def __post_init__(self):
        self.side = BankSide(self.side)
        self.available = to_money(self.available)


@dataclass
class ProposedAllocation:
    """
    One item of an allocation batch awaiting validation.

    May hold a zero or wrong-signed amount; the validator reports those.
    """
    external_id: str
    bank_amount: Decimal
    side: BankSide
    allocated_amount: Decimal
    bank_status: str = BankTransactionStatus.COMPLETED.value

    def __post_init__(self):
        self.side = BankSide(self.side)
        self.bank_amount = abs(to_money(self.bank_amount))
        self.allocated_amount = to_money(self.allocated_amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "bank_amount": money_to_float(self.bank_amount),
            "side": self.side.value,
            "allocated_amount": money_to_float(self.allocated_amount),
        }


@dataclass(frozen=True)
class ApprovedAllocation:
    """
    Allocation cleared by batch validation, ready to be persisted.

    Construction fails unless the amount is non-zero and its sign agrees
    with the ledger direction.
    """
    ledger_transaction_id: str
    external_id: str
    direction: LedgerDirection
    allocated_amount: Decimal

    def __post_init__(self):
        amount = to_money(self.allocated_amount)
        direction = LedgerDirection(self.direction)
        object.__setattr__(self, "allocated_amount", amount)
        object.__setattr__(self, "direction", direction)

        if amount == ZERO:
            raise ValueError(f"Allocation for {self.external_id} must be non-zero")
        if direction == LedgerDirection.EXPENSE and amount > ZERO:
            raise ValueError(f"Expense allocation for {self.external_id} must be negative")
        if direction == LedgerDirection.INCOME and amount < ZERO:
            raise ValueError(f"Income allocation for {self.external_id} must be positive")


@dataclass
class CandidateSelection:
    """A bank transaction picked by the operator, optionally with an explicit amount."""
    external_id: str
    allocated_amount: Optional[Decimal] = None

    def __post_init__(self):
        if self.allocated_amount is not None:
            self.allocated_amount = to_money(self.allocated_amount)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandidateSelection":
        external_id = data.get("external_id") or data.get("id")
        if not external_id:
            raise ValueError("Selection is missing external_id")
        return cls(
            external_id=str(external_id),
            allocated_amount=data.get("allocated_amount"),
        )


# ==================== RESULTS ====================

@dataclass
class BatchValidation:
    """Outcome of validating an allocation batch (all errors, never just the first)."""
    is_valid: bool
    errors: List[str]
    warnings: List[str]
    summary: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "summary": dict(self.summary),
        }

    def raise_for_errors(self) -> None:
        if not self.is_valid:
            raise ValidationFailedError(self.errors, self.summary)


@dataclass
class Discrepancy:
    """A linked ledger transaction whose allocations do not reconcile."""
    ledger_transaction_id: str
    ledger_transaction: Optional[LedgerTransaction]
    expected_amount: Optional[Decimal]
    actual_allocated: Decimal
    difference: Optional[Decimal]
    is_amount_match: bool
    direction_issues: List[Dict[str, Any]]
    link_count: int
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ledger_transaction_id": self.ledger_transaction_id,
            "ledger_transaction": self.ledger_transaction.to_dict() if self.ledger_transaction else None,
            "expected_amount": money_to_float(self.expected_amount) if self.expected_amount is not None else None,
            "actual_allocated": money_to_float(self.actual_allocated),
            "difference": money_to_float(self.difference) if self.difference is not None else None,
            "is_amount_match": self.is_amount_match,
            "direction_issues": list(self.direction_issues),
            "link_count": self.link_count,
            "message": self.message,
        }


@dataclass
class SyncResult:
    """Outcome of one bank feed sync."""
    synced: int
    total: int
    from_: Optional[datetime]
    to: datetime
    pages: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "total": self.total,
            "from": iso_or_none(self.from_),
            "to": iso_or_none(self.to),
            "pages": self.pages,
        }


@dataclass
class AutoSyncOutcome:
    """Whether a throttled sync hit upstream or served the cache."""
    synced: bool
    used_cache: bool
    result: Optional[SyncResult] = None
    last_sync_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_stale(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "used_cache": self.used_cache,
            "stale": self.is_stale,
            "result": self.result.to_dict() if self.result else None,
            "last_sync_at": iso_or_none(self.last_sync_at),
            "error": self.error,
        }
