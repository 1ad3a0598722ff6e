"""
Bank Reconciliation Core - Database Models

Tables:
- ledger_transactions: Accounting ledger (owned by the accounting subsystem, read-only here)
- bank_feed_transactions: Local cache of the upstream bank feed, keyed by external id
- bank_transaction_links: Allocations tying bank transactions to ledger transactions
- bank_feed_sync_state: Sync watermark for the bank feed cache
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, Date, DateTime, ForeignKey, Index, JSON, Numeric,
    CheckConstraint
)
from sqlalchemy.orm import relationship

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================

class LedgerDirection(str, PyEnum):
    """Direction of a ledger transaction, fixes the expected allocation sign"""
    INCOME = "income"    # allocations positive (credit)
    EXPENSE = "expense"  # allocations negative (debit)


class BankSide(str, PyEnum):
    """Side of a bank feed transaction"""
    DEBIT = "debit"      # money out
    CREDIT = "credit"    # money in


class BankTransactionStatus(str, PyEnum):
    """Upstream status of a bank feed transaction"""
    COMPLETED = "completed"
    PENDING = "pending"
    DECLINED = "declined"
    REVERSED = "reversed"


# Which bank side carries allocations for a ledger direction
DIRECTION_SIDE = {
    LedgerDirection.EXPENSE: BankSide.DEBIT,
    LedgerDirection.INCOME: BankSide.CREDIT,
}


# ==================== DATABASE MODELS ====================

class LedgerTransactionDB(Base):
    """
    Ledger transaction as recorded by the accounting subsystem.

    Amount is always positive; direction carries the sign.
    """
    __tablename__ = "ledger_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    direction = Column(String(10), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(30), nullable=False, default="recorded")
    description = Column(Text, nullable=True)
    date = Column(Date, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class BankFeedTransactionDB(Base):
    """
    Cached copy of an upstream bank transaction.

    Upserted by external_id on every sync, never edited locally.
    """
    __tablename__ = "bank_feed_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    external_id = Column(String(64), nullable=False, unique=True)
    upstream_transaction_id = Column(String(128), nullable=True)

    # Unsigned amount, side gives the direction
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=True)
    side = Column(String(6), nullable=False)
    status = Column(String(20), nullable=False, index=True)

    settled_at = Column(DateTime(timezone=True), nullable=True, index=True)
    emitted_at = Column(DateTime(timezone=True), nullable=True)

    # Free-text metadata
    label = Column(Text, nullable=True)
    reference = Column(Text, nullable=True)
    note = Column(Text, nullable=True)
    operation_type = Column(String(50), nullable=True)
    web_url = Column(Text, nullable=True)
    raw_data = Column(JSON, nullable=True)

    fetched_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    links = relationship("BankTransactionLinkDB", back_populates="bank_transaction")

    __table_args__ = (
        CheckConstraint("side IN ('debit', 'credit')", name="ck_bank_feed_side"),
        CheckConstraint("amount >= 0", name="ck_bank_feed_amount_unsigned"),
        Index('ix_bank_feed_status_settled', 'status', 'settled_at'),
    )


class BankTransactionLinkDB(Base):
    """
    Allocation of part or all of a bank transaction to a ledger transaction.

    allocated_amount is signed: negative for expense/debit, positive for income/credit.
    """
    __tablename__ = "bank_transaction_links"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    ledger_transaction_id = Column(String(36), nullable=False, index=True)
    bank_transaction_external_id = Column(
        String(64),
        ForeignKey("bank_feed_transactions.external_id"),
        nullable=False,
        index=True
    )
    allocated_amount = Column(Numeric(12, 2), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    created_by = Column(String(36), nullable=True)

    bank_transaction = relationship("BankFeedTransactionDB", back_populates="links")

    __table_args__ = (
        CheckConstraint("allocated_amount <> 0", name="ck_link_allocation_nonzero"),
        Index('ix_links_ledger_bank', 'ledger_transaction_id', 'bank_transaction_external_id'),
    )


class BankFeedSyncStateDB(Base):
    """
    Sync watermark for the bank feed cache.

    One row per feed; the default feed uses id 'default'.
    """
    __tablename__ = "bank_feed_sync_state"

    id = Column(String(32), primary_key=True, default="default")
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_settled_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
