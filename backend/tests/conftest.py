"""
Shared fixtures for reconciliation tests.

In-memory stand-ins for the SQL repositories so validator, cache and
orchestrator logic runs without a database.
"""

from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from reconciliation.bank_feed.store import SyncState
from reconciliation.models import (
    AutoSyncOutcome, BankAllocation, BankTransaction, LedgerTransaction, Link,
    LinkStatus, ZERO
)


def dt(day: int, hour: int = 12) -> datetime:
    return datetime(2024, 3, day, hour, 0, tzinfo=timezone.utc)


class FakeLedgerReader:
    def __init__(self, transactions=None):
        self.transactions = {tx.id: tx for tx in (transactions or [])}

    def add(self, tx: LedgerTransaction):
        self.transactions[tx.id] = tx

    async def get_ledger_transaction(self, ledger_transaction_id):
        return self.transactions.get(ledger_transaction_id)

    async def get_many(self, ledger_transaction_ids):
        return {i: self.transactions[i] for i in ledger_transaction_ids if i in self.transactions}


class FakeAllocationLedger:
    def __init__(self, bank_transactions=None):
        self.bank_transactions = {tx.external_id: tx for tx in (bank_transactions or [])}
        self.links = []
        self.fail_for = set()
        self._counter = 0

    def add_link(self, ledger_transaction_id, external_id, amount, link_id=None):
        self._counter += 1
        bank_tx = self.bank_transactions.get(external_id)
        link = Link(
            id=link_id or f"link-{self._counter}",
            ledger_transaction_id=ledger_transaction_id,
            bank_transaction_external_id=external_id,
            allocated_amount=Decimal(str(amount)),
            bank_settled_at=bank_tx.settled_at if bank_tx else None,
        )
        self.links.append(link)
        return link

    async def create_link(self, ledger_transaction_id, bank_transaction, allocated_amount, actor_id=None):
        if bank_transaction.external_id in self.fail_for:
            raise IntegrityError("INSERT INTO bank_transaction_links", {}, Exception("constraint violated"))
        link = self.add_link(ledger_transaction_id, bank_transaction.external_id, allocated_amount)
        link.created_by = actor_id
        return link

    async def delete_link(self, link_id):
        before = len(self.links)
        self.links = [link for link in self.links if link.id != link_id]
        return len(self.links) < before

    async def get_link(self, link_id):
        return next((link for link in self.links if link.id == link_id), None)

    async def get_links_for_ledger_tx(self, ledger_transaction_id):
        links = [link for link in self.links if link.ledger_transaction_id == ledger_transaction_id]
        return sorted(
            links,
            key=lambda link: link.bank_settled_at.timestamp() if link.bank_settled_at else float("-inf"),
            reverse=True,
        )

    async def get_allocation_for_bank_tx(self, external_id):
        bank_tx = self.bank_transactions.get(external_id)
        links = [link for link in self.links if link.bank_transaction_external_id == external_id]
        return BankAllocation(
            external_id=external_id,
            bank_amount=bank_tx.amount if bank_tx else ZERO,
            allocated=sum((abs(link.allocated_amount) for link in links), ZERO),
            links=links,
        )

    async def get_allocated_totals(self, external_ids):
        totals = {external_id: ZERO for external_id in external_ids}
        for link in self.links:
            if link.bank_transaction_external_id in totals:
                totals[link.bank_transaction_external_id] += abs(link.allocated_amount)
        return totals

    async def get_links_for_many_bank_tx(self, external_ids):
        statuses = {}
        for external_id in external_ids:
            links = [link for link in self.links if link.bank_transaction_external_id == external_id]
            statuses[external_id] = LinkStatus(
                is_linked=bool(links),
                linked_ledger_ids=list(dict.fromkeys(link.ledger_transaction_id for link in links)),
                link_ids=[link.id for link in links],
            )
        return statuses

    async def get_linked_ledger_transaction_ids(self):
        return sorted({link.ledger_transaction_id for link in self.links})


class FakeBankStore:
    """Stand-in for BankTransactionStore (ignores the session)."""

    def __init__(self, transactions=None):
        self.transactions = {tx.external_id: tx for tx in (transactions or [])}
        self.locked = []

    def __call__(self, session):
        return self

    async def upsert_many(self, transactions):
        rows = {}
        for tx in transactions:
            rows[tx.external_id] = BankTransaction(
                external_id=tx.external_id,
                amount=tx.amount,
                side=tx.side,
                status=tx.status,
                settled_at=tx.settled_at,
                label=tx.label,
            )
        self.transactions.update(rows)
        return len(rows)

    async def list_transactions(self, status=None, settled_from=None, settled_to=None, limit=None):
        rows = [
            tx for tx in self.transactions.values()
            if (status is None or tx.status == status)
            and (settled_from is None or (tx.settled_at and tx.settled_at >= settled_from))
            and (settled_to is None or (tx.settled_at and tx.settled_at <= settled_to))
        ]
        rows.sort(key=lambda tx: tx.settled_at.timestamp() if tx.settled_at else float("-inf"), reverse=True)
        return rows[:limit] if limit else rows

    async def get(self, external_id):
        return self.transactions.get(external_id)

    async def lock_for_allocation(self, external_ids):
        ids = sorted(set(external_ids))
        self.locked.append(ids)
        return {i: self.transactions[i] for i in ids if i in self.transactions}

    async def count(self):
        return len(self.transactions)

    def _settled(self):
        return sorted(
            (tx for tx in self.transactions.values() if tx.settled_at),
            key=lambda tx: tx.settled_at,
        )

    async def newest(self):
        settled = self._settled()
        return settled[-1] if settled else None

    async def oldest(self):
        settled = self._settled()
        return settled[0] if settled else None

    async def clear(self):
        deleted = len(self.transactions)
        self.transactions = {}
        return deleted


class FakeSyncStateStore:
    """Stand-in for SyncStateStore (ignores the session)."""

    def __init__(self):
        self.state = None
        self.failures = []

    def __call__(self, session):
        return self

    async def get(self):
        return self.state

    async def record_success(self, synced_at, newest_settled_at):
        self.state = SyncState(last_sync_at=synced_at, last_synced_settled_at=newest_settled_at)

    async def record_failure(self, failed_at, message):
        self.failures.append((failed_at, message))
        if self.state is None:
            self.state = SyncState()
        self.state.last_error = message
        self.state.last_error_at = failed_at

    async def reset(self):
        self.state = None


class FakeSession:
    """Async session with commit/rollback counters and savepoints."""

    def __init__(self):
        self.commits = 0
        self.rollbacks = 0
        self.savepoints = defaultdict(int)

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    async def close(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def begin_nested(self):
        return FakeSavepoint(self)


class FakeSavepoint:
    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        key = "rolled_back" if exc_type else "released"
        self.session.savepoints[key] += 1
        return False


class FakeCache:
    """Stand-in for BankFeedCache as seen by the orchestrator."""

    def __init__(self, transactions=None, outcome=None):
        self.transactions = list(transactions or [])
        self.outcome = outcome or AutoSyncOutcome(synced=False, used_cache=True, last_sync_at=dt(20))
        self.auto_sync_calls = 0

    async def auto_sync(self, threshold=None):
        self.auto_sync_calls += 1
        return self.outcome

    async def get_cached(self, status=None, **filters):
        return [tx for tx in self.transactions if status is None or tx.status == status]


# ==================== FIXTURES ====================

@pytest.fixture
def expense_150():
    """Create an expense ledger transaction of 150.00."""
    return LedgerTransaction(id="ledger-expense", direction="expense", amount=Decimal("150.00"), status="recorded")


@pytest.fixture
def income_500():
    """Create an income ledger transaction of 500.00."""
    return LedgerTransaction(id="ledger-income", direction="income", amount=Decimal("500.00"), status="recorded")


@pytest.fixture
def bank_txs():
    """Create cached bank transactions of both sides."""
    return [
        BankTransaction(external_id="debit-150", amount=Decimal("150.00"), side="debit", status="completed", settled_at=dt(5)),
        BankTransaction(external_id="debit-50", amount=Decimal("50.00"), side="debit", status="completed", settled_at=dt(6)),
        BankTransaction(external_id="debit-100", amount=Decimal("100.00"), side="debit", status="completed", settled_at=dt(7)),
        BankTransaction(external_id="credit-500", amount=Decimal("500.00"), side="credit", status="completed", settled_at=dt(8)),
        BankTransaction(external_id="debit-pending", amount=Decimal("40.00"), side="debit", status="pending", settled_at=dt(9)),
    ]


@pytest.fixture
def ledger_reader(expense_150, income_500):
    """Create a ledger reader holding both ledger transactions."""
    return FakeLedgerReader([expense_150, income_500])


@pytest.fixture
def allocation_ledger(bank_txs):
    """Create an empty allocation ledger over the bank transactions."""
    return FakeAllocationLedger(bank_txs)


@pytest.fixture
def bank_store(bank_txs):
    """Create a bank store holding the bank transactions."""
    return FakeBankStore(bank_txs)


@pytest.fixture
def sync_state_store():
    """Create an empty sync state store."""
    return FakeSyncStateStore()


@pytest.fixture
def fake_session():
    """Create a fake async session."""
    return FakeSession()


@pytest.fixture
def session_factory(fake_session):
    """Create a session factory returning the fake session."""
    return lambda: fake_session


@pytest.fixture
def bank_feed_cache(bank_txs):
    """Create a bank feed cache serving the bank transactions."""
    return FakeCache(bank_txs)


@pytest.fixture
def empty_bank_store():
    """Create a bank store with nothing cached."""
    return FakeBankStore()
