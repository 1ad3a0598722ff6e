"""
Database Migration: Create Bank Reconciliation Tables

Creates the bank feed cache, its sync watermark and the allocation links.
ledger_transactions belongs to the accounting subsystem and is created here
only when missing (local and test databases).
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from database.connection import get_engine, dispose_engine


SQL_STATEMENTS = [
    # Ledger transactions (owned by accounting)
    """
    CREATE TABLE IF NOT EXISTS public.ledger_transactions (
        id VARCHAR(36) PRIMARY KEY,
        direction VARCHAR(10) NOT NULL CHECK (direction IN ('income', 'expense')),
        amount NUMERIC(12,2) NOT NULL CHECK (amount >= 0),
        status VARCHAR(30) NOT NULL DEFAULT 'recorded',
        description TEXT,
        date DATE,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,

    # Bank feed cache
    """
    CREATE TABLE IF NOT EXISTS public.bank_feed_transactions (
        id VARCHAR(36) PRIMARY KEY,
        external_id VARCHAR(64) NOT NULL UNIQUE,
        upstream_transaction_id VARCHAR(128),

        -- Unsigned amount, side gives the direction
        amount NUMERIC(12,2) NOT NULL,
        currency VARCHAR(3),
        side VARCHAR(6) NOT NULL,
        status VARCHAR(20) NOT NULL,

        settled_at TIMESTAMPTZ,
        emitted_at TIMESTAMPTZ,

        label TEXT,
        reference TEXT,
        note TEXT,
        operation_type VARCHAR(50),
        web_url TEXT,
        raw_data JSON,

        fetched_at TIMESTAMPTZ DEFAULT NOW(),

        CONSTRAINT ck_bank_feed_side CHECK (side IN ('debit', 'credit')),
        CONSTRAINT ck_bank_feed_amount_unsigned CHECK (amount >= 0)
    )
    """,

    # Allocation links
    """
    CREATE TABLE IF NOT EXISTS public.bank_transaction_links (
        id VARCHAR(36) PRIMARY KEY,
        ledger_transaction_id VARCHAR(36) NOT NULL,
        bank_transaction_external_id VARCHAR(64) NOT NULL
            REFERENCES public.bank_feed_transactions(external_id),

        -- Signed: negative for expense/debit, positive for income/credit
        allocated_amount NUMERIC(12,2) NOT NULL,

        created_at TIMESTAMPTZ DEFAULT NOW(),
        created_by VARCHAR(36),

        CONSTRAINT ck_link_allocation_nonzero CHECK (allocated_amount <> 0)
    )
    """,

    # Sync watermark
    """
    CREATE TABLE IF NOT EXISTS public.bank_feed_sync_state (
        id VARCHAR(32) PRIMARY KEY DEFAULT 'default',
        last_sync_at TIMESTAMPTZ,
        last_synced_settled_at TIMESTAMPTZ,
        last_error TEXT,
        last_error_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,

    # Indexes for ledger_transactions
    "CREATE INDEX IF NOT EXISTS ix_ledger_transactions_date ON public.ledger_transactions(date)",

    # Indexes for bank_feed_transactions
    "CREATE INDEX IF NOT EXISTS ix_bank_feed_transactions_status ON public.bank_feed_transactions(status)",
    "CREATE INDEX IF NOT EXISTS ix_bank_feed_transactions_settled_at ON public.bank_feed_transactions(settled_at)",
    "CREATE INDEX IF NOT EXISTS ix_bank_feed_status_settled ON public.bank_feed_transactions(status, settled_at)",

    # Indexes for bank_transaction_links
    "CREATE INDEX IF NOT EXISTS ix_bank_transaction_links_ledger_transaction_id ON public.bank_transaction_links(ledger_transaction_id)",
    "CREATE INDEX IF NOT EXISTS ix_bank_transaction_links_bank_transaction_external_id ON public.bank_transaction_links(bank_transaction_external_id)",
    "CREATE INDEX IF NOT EXISTS ix_bank_transaction_links_created_at ON public.bank_transaction_links(created_at)",
    "CREATE INDEX IF NOT EXISTS ix_links_ledger_bank ON public.bank_transaction_links(ledger_transaction_id, bank_transaction_external_id)",
]


async def create_tables():
    """Create the bank reconciliation tables."""
    print("Creating bank reconciliation tables...")

    async with get_engine().begin() as conn:
        for i, sql in enumerate(SQL_STATEMENTS):
            try:
                await conn.execute(text(sql))
                print(f"  ✓ Statement {i+1}/{len(SQL_STATEMENTS)} executed")
            except Exception as e:
                if "already exists" in str(e).lower():
                    print(f"  ✓ Statement {i+1}/{len(SQL_STATEMENTS)} (already exists)")
                else:
                    print(f"  ✗ Statement {i+1}/{len(SQL_STATEMENTS)} failed: {e}")
                    raise

    await dispose_engine()
    print("\n✅ Bank reconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
