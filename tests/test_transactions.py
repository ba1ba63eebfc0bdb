import pytest
from decimal import Decimal
from unittest.mock import patch

from errors import InvalidTransitionError, InvariantViolation
from models import IgnoreReason, TransactionRecord
from repositories import AccountLedger, DisputeCache, DisputeEntry
from transactions import Completed, Ignored, Received


def balances(ledger, client):
    account = ledger.get(client)
    return account.available, account.held, account.total, account.locked


def record(kind, client, tx, amount=None):
    return TransactionRecord(type=kind, client=client, tx=tx, amount=amount)


class TestBasicTransactions:
    """Deposits and withdrawals."""

    def test_deposits_and_withdrawal(self, run_statement):
        ledger, summary = run_statement(
            "deposit, 1, 1, 1.5\n"
            "deposit, 1, 2, 2.0\n"
            "withdrawal, 1, 3, 1.0\n"
        )

        assert balances(ledger, 1) == (Decimal("2.5"), Decimal("0"), Decimal("2.5"), False)
        assert summary.records == 3
        assert summary.applied == 3

    def test_multiple_clients(self, run_statement):
        ledger, summary = run_statement(
            "deposit, 1, 1, 1.0\n"
            "deposit, 2, 2, 2.0\n"
            "deposit, 1, 3, 2.0\n"
            "withdrawal, 1, 4, 1.5\n"
            "withdrawal, 2, 5, 3.0\n"
        )

        assert balances(ledger, 1) == (Decimal("1.5"), Decimal("0"), Decimal("1.5"), False)
        assert balances(ledger, 2) == (Decimal("2"), Decimal("0"), Decimal("2"), False)
        assert summary.ignored == {IgnoreReason.insufficient_funds: 1}

    def test_insufficient_funds_leaves_account_unchanged(self, run_statement):
        ledger, _ = run_statement(
            "deposit, 1, 1, 1.0\n"
            "withdrawal, 1, 2, 1.0001\n"
        )

        assert balances(ledger, 1) == (Decimal("1"), Decimal("0"), Decimal("1"), False)

    def test_withdrawal_of_entire_balance(self, run_statement):
        ledger, _ = run_statement(
            "deposit, 1, 1, 1.0\n"
            "withdrawal, 1, 2, 1.0\n"
        )

        assert balances(ledger, 1) == (Decimal("0"), Decimal("0"), Decimal("0"), False)

    def test_deposit_then_withdraw_same_amount(self, run_statement):
        ledger, _ = run_statement(
            "deposit, 1, 1, 10\n"
            "deposit, 1, 2, 3.3333\n"
            "withdrawal, 1, 3, 3.3333\n"
        )

        assert balances(ledger, 1) == (Decimal("10"), Decimal("0"), Decimal("10"), False)

    def test_negative_amounts_are_ignored(self, run_statement):
        ledger, summary = run_statement(
            "deposit, 1, 1, 5\n"
            "deposit, 1, 2, -1\n"
            "withdrawal, 1, 3, -1\n"
        )

        assert balances(ledger, 1) == (Decimal("5"), Decimal("0"), Decimal("5"), False)
        assert summary.ignored == {IgnoreReason.negative_amount: 2}

    def test_zero_deposit_is_applied(self, run_statement):
        ledger, summary = run_statement("deposit, 1, 1, 0\n")

        assert balances(ledger, 1) == (Decimal("0"), Decimal("0"), Decimal("0"), False)
        assert summary.applied == 1

    def test_rejected_withdrawal_still_opens_account(self, run_statement):
        ledger, _ = run_statement("withdrawal, 9, 1, 1.0\n")

        assert 9 in ledger
        assert balances(ledger, 9) == (Decimal("0"), Decimal("0"), Decimal("0"), False)

    def test_case_insensitive_kinds(self, run_statement):
        ledger, _ = run_statement(
            "DEPOSIT, 1, 1, 2\n"
            "Withdrawal, 1, 2, 1\n"
        )

        assert balances(ledger, 1) == (Decimal("1"), Decimal("0"), Decimal("1"), False)


class TestDisputes:
    """Dispute, resolve and chargeback flows."""

    def test_dispute_moves_funds_to_held(self, run_statement):
        ledger, _ = run_statement(
            "deposit, 2, 10, 5.0\n"
            "dispute, 2, 10,\n"
        )

        assert balances(ledger, 2) == (Decimal("0"), Decimal("5"), Decimal("5"), False)

    def test_second_dispute_is_ignored(self, run_statement):
        ledger, summary = run_statement(
            "deposit, 1, 1, 5.0\n"
            "deposit, 1, 2, 5.0\n"
            "dispute, 1, 1\n"
            "dispute, 1, 1\n"
        )

        assert balances(ledger, 1) == (Decimal("5"), Decimal("5"), Decimal("10"), False)
        assert summary.ignored == {IgnoreReason.already_disputed: 1}

    def test_resolve_releases_held_funds(self, run_statement):
        ledger, summary = run_statement(
            "deposit, 1, 1, 1.0\n"
            "deposit, 1, 6, 1.5\n"
            "dispute, 1, 6\n"
            "resolve, 1, 6\n"
            "resolve, 1, 6\n"
            "chargeback, 1, 6\n"
        )

        assert balances(ledger, 1) == (Decimal("2.5"), Decimal("0"), Decimal("2.5"), False)
        assert summary.ignored == {IgnoreReason.not_disputed: 2}

    def test_chargeback_locks_account(self, run_statement):
        ledger, summary = run_statement(
            "deposit, 2, 10, 5.0\n"
            "dispute, 2, 10\n"
            "chargeback, 2, 10\n"
            "deposit, 2, 11, 1.0\n"
            "withdrawal, 2, 12, 0\n"
        )

        assert balances(ledger, 2) == (Decimal("0"), Decimal("0"), Decimal("0"), True)
        assert summary.ignored == {IgnoreReason.account_locked: 2}

    def test_locked_account_rejects_disputes(self, run_statement):
        ledger, summary = run_statement(
            "deposit, 1, 1, 5.0\n"
            "deposit, 1, 2, 3.0\n"
            "dispute, 1, 1\n"
            "chargeback, 1, 1\n"
            "dispute, 1, 2\n"
        )

        assert balances(ledger, 1) == (Decimal("3"), Decimal("0"), Decimal("3"), True)
        assert summary.ignored == {IgnoreReason.account_locked: 1}

    def test_dispute_of_unknown_transaction_is_ignored(self, run_statement):
        ledger, summary = run_statement(
            "deposit, 1, 1, 5.0\n"
            "dispute, 1, 99\n"
        )

        assert balances(ledger, 1) == (Decimal("5"), Decimal("0"), Decimal("5"), False)
        assert summary.ignored == {IgnoreReason.unknown_transaction: 1}

    def test_dispute_cannot_reference_a_later_transaction(self, run_statement):
        ledger, summary = run_statement(
            "dispute, 1, 1\n"
            "deposit, 1, 1, 5.0\n"
        )

        assert balances(ledger, 1) == (Decimal("5"), Decimal("0"), Decimal("5"), False)
        assert summary.ignored == {IgnoreReason.unknown_transaction: 1}

    def test_foreign_references_are_ignored(self, run_statement):
        ledger, summary = run_statement(
            "deposit, 1, 1, 5.0\n"
            "deposit, 2, 2, 7.0\n"
            "dispute, 2, 1\n"
            "dispute, 1, 1\n"
            "resolve, 2, 1\n"
            "chargeback, 2, 1\n"
            "dispute, 2, 1\n"
        )

        assert balances(ledger, 1) == (Decimal("0"), Decimal("5"), Decimal("5"), False)
        assert balances(ledger, 2) == (Decimal("7"), Decimal("0"), Decimal("7"), False)
        assert summary.ignored == {IgnoreReason.client_mismatch: 4}

    def test_dispute_exceeding_available_is_ignored(self, run_statement):
        ledger, summary = run_statement(
            "deposit, 1, 1, 5.0\n"
            "withdrawal, 1, 2, 4.0\n"
            "dispute, 1, 1\n"
        )

        assert balances(ledger, 1) == (Decimal("1"), Decimal("0"), Decimal("1"), False)
        assert summary.ignored == {IgnoreReason.insufficient_funds: 1}

    def test_dispute_of_withdrawal_holds_its_amount(self, run_statement):
        ledger, _ = run_statement(
            "deposit, 1, 1, 5.0\n"
            "withdrawal, 1, 2, 2.0\n"
            "dispute, 1, 2\n"
        )

        assert balances(ledger, 1) == (Decimal("1"), Decimal("2"), Decimal("3"), False)

    def test_resolved_transaction_can_be_disputed_again(self, run_statement):
        ledger, _ = run_statement(
            "deposit, 1, 1, 5.0\n"
            "dispute, 1, 1\n"
            "resolve, 1, 1\n"
            "dispute, 1, 1\n"
        )

        assert balances(ledger, 1) == (Decimal("0"), Decimal("5"), Decimal("5"), False)

    def test_amount_on_dispute_rows_is_ignored(self, run_statement):
        ledger, _ = run_statement(
            "deposit, 1, 1, 5.0\n"
            "dispute, 1, 1, 1.0\n"
        )

        assert balances(ledger, 1) == (Decimal("0"), Decimal("5"), Decimal("5"), False)

    def test_total_is_always_available_plus_held(self, run_statement):
        ledger, _ = run_statement(
            "deposit, 1, 1, 1.1111\n"
            "deposit, 1, 2, 2.2222\n"
            "dispute, 1, 1\n"
            "withdrawal, 1, 3, 0.5\n"
            "resolve, 1, 1\n"
            "dispute, 1, 2\n"
            "deposit, 2, 4, 3\n"
            "dispute, 2, 4\n"
            "chargeback, 2, 4\n"
        )

        for snapshot in ledger.snapshots():
            assert snapshot.total == snapshot.available + snapshot.held
            assert snapshot.available >= 0
            assert snapshot.held >= 0


class TestPhases:
    """Phase transitions consume the phase they start from."""

    def test_received_cannot_be_advanced_twice(self):
        received = Received(record("deposit", 1, 1, "1"))
        received.to_processing()

        with pytest.raises(InvalidTransitionError):
            received.to_processing()
        with pytest.raises(InvalidTransitionError):
            received.ignore(IgnoreReason.account_locked)

    def test_processing_cannot_be_applied_twice(self):
        ledger = AccountLedger()
        ledger.open(1)
        processing = Received(record("deposit", 1, 1, "1")).to_processing()

        completed = processing.apply(ledger, DisputeCache())

        assert isinstance(completed, Completed)
        with pytest.raises(InvalidTransitionError):
            processing.apply(ledger, DisputeCache())
        assert ledger.get(1).total == Decimal("1")

    def test_transition_must_match_kind(self):
        with pytest.raises(InvalidTransitionError):
            Received(record("dispute", 1, 1)).to_processing()
        with pytest.raises(InvalidTransitionError):
            Received(record("deposit", 1, 1, "1")).to_dispute_lookup()
        with pytest.raises(InvalidTransitionError):
            Received(record("resolve", 1, 1)).to_chargeback()
        with pytest.raises(InvalidTransitionError):
            Received(record("chargeback", 1, 1)).to_resolution()

    def test_ignore_is_terminal(self):
        received = Received(record("withdrawal", 1, 1, "1"))

        ignored = received.ignore(IgnoreReason.insufficient_funds)

        assert isinstance(ignored, Ignored)
        assert ignored.reason is IgnoreReason.insufficient_funds
        assert received.consumed

    def test_dispute_lookup_requires_matching_original(self):
        lookup = Received(record("dispute", 1, 5), position=3).to_dispute_lookup()

        assert lookup.position == 3
        with pytest.raises(InvalidTransitionError):
            lookup.to_processing(record("deposit", 1, 6, "1"))

    def test_resolve_with_vanished_entry_is_fatal(self):
        ledger = AccountLedger()
        ledger.open(1)
        processing = Received(record("resolve", 1, 5)).to_resolution().to_processing(
            DisputeEntry(1, Decimal("1"))
        )

        with pytest.raises(InvariantViolation):
            processing.apply(ledger, DisputeCache())


class TestAuditLogging:
    """Ignored transactions are logged with their reason."""

    @patch("services.logger")
    def test_ignored_transaction_is_logged(self, mock_logger, run_statement):
        run_statement("withdrawal, 1, 1, 5\n")

        mock_logger.debug.assert_called_once()
        _, kwargs = mock_logger.debug.call_args
        assert kwargs["reason"] == "insufficient_funds"
        assert kwargs["client"] == 1
        assert kwargs["tx"] == 1
