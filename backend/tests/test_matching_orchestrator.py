"""
Unit Tests for Matching Orchestrator

Tests the operator-facing flows:
- Candidate search with direction filtering and allocation info
- Committing links (auto-split, explicit amounts, rejection)
- Per-link savepoints on partial failure
- Link removal and health checks

Run with: pytest tests/test_matching_orchestrator.py -v
"""

from decimal import Decimal

import pytest

from reconciliation.errors import NotFoundError
from reconciliation.models import CandidateSelection, LedgerTransaction
from reconciliation.orchestrator import MatchingOrchestrator
from reconciliation.validator import ReconciliationValidator


@pytest.fixture
def orchestrator(fake_session, bank_feed_cache, ledger_reader, allocation_ledger, bank_store):
    """Create orchestrator wired to in-memory repositories."""
    orchestrator = MatchingOrchestrator(fake_session, bank_feed_cache, tolerance=Decimal("0.00"))
    orchestrator.ledger_reader = ledger_reader
    orchestrator.allocation_ledger = allocation_ledger
    orchestrator.bank_store = bank_store
    orchestrator.validator = ReconciliationValidator(ledger_reader, allocation_ledger, Decimal("0.00"))
    return orchestrator


class TestSearchCandidates:
    """Test candidate search."""

    @pytest.mark.asyncio
    async def test_hides_direction_mismatches(self, orchestrator, bank_feed_cache):
        """Test income ledger transactions only see credit candidates."""
        result = await orchestrator.search_candidates("ledger-income")

        assert [c["external_id"] for c in result["candidates"]] == ["credit-500"]
        assert result["hidden_direction_mismatches"] == 3
        assert result["candidates"][0]["available_amount"] == 500.0
        assert result["sync_info"]["used_cache"] is True
        assert bank_feed_cache.auto_sync_calls == 1

    @pytest.mark.asyncio
    async def test_can_include_direction_mismatches(self, orchestrator):
        """Test the flag exposes mismatches with an indicator, newest first."""
        result = await orchestrator.search_candidates("ledger-income", include_direction_mismatches=True)

        ids = [c["external_id"] for c in result["candidates"]]
        assert ids == ["credit-500", "debit-100", "debit-50", "debit-150"]
        assert result["candidates"][0]["direction_matches"] is True
        assert result["candidates"][1]["direction_matches"] is False
        assert "NEGATIVE" in result["candidates"][1]["direction_message"]

    @pytest.mark.asyncio
    async def test_pending_transactions_excluded(self, orchestrator):
        """Test only completed bank transactions are offered."""
        result = await orchestrator.search_candidates("ledger-expense")

        ids = [c["external_id"] for c in result["candidates"]]
        assert "debit-pending" not in ids
        assert ids == ["debit-100", "debit-50", "debit-150"]

    @pytest.mark.asyncio
    async def test_reports_allocation_and_links(self, orchestrator, allocation_ledger):
        """Test candidates carry allocated totals and link status."""
        allocation_ledger.add_link("other-ledger", "debit-100", "-80.00", link_id="link-a")
        allocation_ledger.add_link("ledger-expense", "debit-50", "-50.00", link_id="link-b")

        result = await orchestrator.search_candidates("ledger-expense")
        by_id = {c["external_id"]: c for c in result["candidates"]}

        assert by_id["debit-100"]["total_allocated"] == 80.0
        assert by_id["debit-100"]["available_amount"] == 20.0
        assert by_id["debit-100"]["is_linked"] is True
        assert by_id["debit-100"]["is_linked_to_this"] is False
        assert by_id["debit-100"]["linked_ledger_ids"] == ["other-ledger"]

        assert by_id["debit-50"]["is_fully_allocated"] is True
        assert by_id["debit-50"]["is_linked_to_this"] is True
        assert by_id["debit-50"]["link_ids"] == ["link-b"]

        assert by_id["debit-150"]["is_linked"] is False

    @pytest.mark.asyncio
    async def test_unknown_ledger_transaction(self, orchestrator):
        """Test searching for an unknown ledger transaction raises."""
        with pytest.raises(NotFoundError):
            await orchestrator.search_candidates("missing")


class TestCommitLinks:
    """Test committing allocation batches."""

    @pytest.mark.asyncio
    async def test_auto_split_in_selection_order(self, orchestrator, fake_session, bank_store, allocation_ledger):
        """Test selections without amounts share the ledger amount greedily."""
        result = await orchestrator.commit_links(
            "ledger-expense",
            [{"external_id": "debit-100"}, {"external_id": "debit-150"}],
            actor_id="operator-1"
        )

        assert result["success"] is True
        assert [(l["bank_transaction_external_id"], l["allocated_amount"]) for l in result["linked"]] == [
            ("debit-100", -100.0),
            ("debit-150", -50.0),
        ]
        assert result["errors"] == []
        assert result["state"] == "fully_reconciled"
        assert result["validation"]["is_amount_match"] is True
        assert all(link.created_by == "operator-1" for link in allocation_ledger.links)
        assert bank_store.locked == [["debit-100", "debit-150"]]
        assert fake_session.commits == 1
        assert fake_session.savepoints["released"] == 2

    @pytest.mark.asyncio
    async def test_explicit_amount_consumed_before_auto_split(self, orchestrator):
        """Test explicit allocations reduce what the auto-split hands out."""
        result = await orchestrator.commit_links("ledger-expense", [
            CandidateSelection("debit-150", Decimal("-50.00")),
            {"id": "debit-100"},
        ])

        assert result["success"] is True
        amounts = {l["bank_transaction_external_id"]: l["allocated_amount"] for l in result["linked"]}
        assert amounts == {"debit-150": -50.0, "debit-100": -100.0}

    @pytest.mark.asyncio
    async def test_unsigned_explicit_amount_signed_from_bank_side(self, orchestrator, allocation_ledger):
        """Test an explicit 150.00 on a debit is stored as -150.00."""
        result = await orchestrator.commit_links("ledger-expense", [
            {"external_id": "debit-150", "allocated_amount": "150.00"}
        ])

        assert result["success"] is True
        assert result["linked"][0]["allocated_amount"] == -150.0
        assert allocation_ledger.links[0].allocated_amount == Decimal("-150.00")
        assert result["state"] == "fully_reconciled"

    @pytest.mark.asyncio
    async def test_repeated_auto_selection_sees_used_capacity(self, orchestrator, allocation_ledger):
        """Test a bank transaction selected twice is not handed out twice."""
        result = await orchestrator.commit_links("ledger-expense", [
            {"external_id": "debit-100"},
            {"external_id": "debit-100"},
        ])

        assert result["success"] is False
        assert any("must be greater than zero (got 0.00)" in e for e in result["errors"])
        assert not any("available" in e for e in result["errors"])
        assert allocation_ledger.links == []

    @pytest.mark.asyncio
    async def test_existing_links_reduce_remaining(self, orchestrator, allocation_ledger):
        """Test only the still-needed amount is auto-allocated."""
        allocation_ledger.add_link("ledger-expense", "debit-50", "-50.00")

        result = await orchestrator.commit_links("ledger-expense", [{"external_id": "debit-150"}])

        assert result["success"] is True
        assert result["linked"][0]["allocated_amount"] == -100.0
        assert result["state"] == "fully_reconciled"

    @pytest.mark.asyncio
    async def test_direction_mismatch_rejected(self, orchestrator, fake_session, allocation_ledger):
        """Test income 500 against a debit candidate writes nothing."""
        result = await orchestrator.commit_links("ledger-income", [{"external_id": "debit-150"}])

        assert result["success"] is False
        assert result["error"] == "Validation failed"
        assert any("INCOME" in e and "NEGATIVE" in e for e in result["errors"])
        assert allocation_ledger.links == []
        assert fake_session.rollbacks == 1
        assert fake_session.commits == 0

    @pytest.mark.asyncio
    async def test_unknown_bank_transaction_rejected(self, orchestrator, allocation_ledger):
        """Test selections missing from the cache fail validation."""
        result = await orchestrator.commit_links("ledger-expense", [
            {"external_id": "debit-150"},
            {"external_id": "nope"},
        ])

        assert result["success"] is False
        assert result["errors"][0] == "Bank transaction nope not found"
        assert allocation_ledger.links == []

    @pytest.mark.asyncio
    async def test_capacity_used_by_other_ledger(self, orchestrator, ledger_reader):
        """Test a bank transaction fully used by one commit cannot fund another."""
        ledger_reader.add(LedgerTransaction("ledger-100", "expense", Decimal("100.00"), "recorded"))

        first = await orchestrator.commit_links("ledger-expense", [{"external_id": "debit-150"}])
        second = await orchestrator.commit_links("ledger-100", [
            {"external_id": "debit-150", "allocated_amount": "-100.00"}
        ])

        assert first["success"] is True
        assert second["success"] is False
        assert any("only has 0.00 available" in e for e in second["errors"])
        assert any("other ledger transaction" in w for w in second["warnings"])

    @pytest.mark.asyncio
    async def test_failed_insert_keeps_siblings(self, orchestrator, fake_session, allocation_ledger):
        """Test one failing insert does not undo the other links."""
        allocation_ledger.fail_for = {"debit-50"}

        result = await orchestrator.commit_links("ledger-expense", [
            {"external_id": "debit-50"},
            {"external_id": "debit-100"},
        ])

        assert result["success"] is True
        assert [l["bank_transaction_external_id"] for l in result["linked"]] == ["debit-100"]
        assert result["errors"][0]["external_id"] == "debit-50"
        assert result["state"] == "partially_allocated"
        assert fake_session.savepoints == {"rolled_back": 1, "released": 1}
        assert fake_session.commits == 1

    @pytest.mark.asyncio
    async def test_unknown_ledger_transaction(self, orchestrator):
        """Test committing to an unknown ledger transaction raises."""
        with pytest.raises(NotFoundError):
            await orchestrator.commit_links("missing", [{"external_id": "debit-150"}])


class TestRemoveLinkAndHealth:
    """Test link removal, validation status and discrepancies."""

    @pytest.mark.asyncio
    async def test_remove_link(self, orchestrator, fake_session, allocation_ledger):
        """Test removing a link reports the new state."""
        allocation_ledger.add_link("ledger-expense", "debit-150", "-150.00", link_id="link-1")

        result = await orchestrator.remove_link("link-1", actor_id="operator-1")

        assert result["success"] is True
        assert result["removed"]["id"] == "link-1"
        assert result["state"] == "unlinked"
        assert allocation_ledger.links == []
        assert fake_session.commits == 1

    @pytest.mark.asyncio
    async def test_remove_unknown_link(self, orchestrator):
        """Test removing an unknown link raises NotFoundError."""
        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.remove_link("missing-link")
        assert "Link missing-link not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_validation_status(self, orchestrator, allocation_ledger):
        """Test validation status is returned as plain data."""
        allocation_ledger.add_link("ledger-expense", "debit-50", "-50.00")

        status = await orchestrator.get_validation_status("ledger-expense")

        assert status["state"] == "partially_allocated"
        assert status["amount_match"]["difference"] == 100.0

        with pytest.raises(NotFoundError):
            await orchestrator.get_validation_status("missing")

    @pytest.mark.asyncio
    async def test_find_discrepancies(self, orchestrator, allocation_ledger):
        """Test only under-allocated ledger transactions are reported."""
        allocation_ledger.add_link("ledger-expense", "debit-150", "-150.00")
        allocation_ledger.add_link("ledger-income", "credit-500", "200.00")

        discrepancies = await orchestrator.find_discrepancies()

        assert len(discrepancies) == 1
        assert discrepancies[0]["ledger_transaction_id"] == "ledger-income"
        assert discrepancies[0]["expected_amount"] == 500.0
        assert discrepancies[0]["actual_allocated"] == 200.0
