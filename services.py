from typing import Optional, Tuple, Union

import structlog

from models import IgnoreReason, ProcessingSummary, TransactionKind
from records import RecordSource
from repositories import AccountLedger, DisputeCache, DisputeEntry
from transactions import Completed, Ignored, Received

logger = structlog.get_logger()

Outcome = Union[Completed, Ignored]


class TransactionProcessor:
    """Applies records to the ledger one at a time, in input order.

    Business rules are checked here, before any ledger call. A record that
    breaks one is ignored and processing continues. Errors from the source
    (malformed input) and from the ledger or phases (invariant violations)
    propagate and end the run.
    """

    def __init__(
        self,
        ledger: AccountLedger,
        disputes: DisputeCache,
        source: RecordSource,
        log_ignored: bool = True
    ):
        self.ledger = ledger
        self.disputes = disputes
        self.source = source
        self.log_ignored = log_ignored

    def run(self, summary: Optional[ProcessingSummary] = None) -> ProcessingSummary:
        summary = summary if summary is not None else ProcessingSummary()

        for position, record in enumerate(self.source):
            outcome = self.process(Received(record, position=position))
            if isinstance(outcome, Completed):
                summary.record_applied()
            else:
                summary.record_ignored(outcome.reason)

        logger.info(
            "Records processed",
            records=summary.records,
            applied=summary.applied,
            ignored=summary.ignored_count,
            accounts=len(self.ledger),
            open_disputes=len(self.disputes)
        )
        return summary

    def process(self, received: Received) -> Outcome:
        kind = received.record.kind

        if kind.moves_funds:
            outcome = self._process_transfer(received)
        elif kind is TransactionKind.dispute:
            outcome = self._process_dispute(received)
        elif kind is TransactionKind.resolve:
            outcome = self._process_resolve(received)
        else:
            outcome = self._process_chargeback(received)

        if isinstance(outcome, Ignored) and self.log_ignored:
            logger.debug(
                "Transaction ignored",
                type=kind.value,
                client=outcome.record.client,
                tx=outcome.record.tx,
                reason=outcome.reason.value
            )
        return outcome

    def _process_transfer(self, received: Received) -> Outcome:
        record = received.record
        account = self.ledger.open(record.client)

        if account.locked:
            return received.ignore(IgnoreReason.account_locked)
        if record.amount < 0:
            return received.ignore(IgnoreReason.negative_amount)
        if record.kind is TransactionKind.withdrawal and record.amount > account.available:
            return received.ignore(IgnoreReason.insufficient_funds)

        return received.to_processing().apply(self.ledger, self.disputes)

    def _process_dispute(self, received: Received) -> Outcome:
        record = received.record
        account = self.ledger.get(record.client)

        if account is not None and account.locked:
            return received.ignore(IgnoreReason.account_locked)

        entry = self.disputes.get(record.tx)
        if entry is not None:
            if entry.client != record.client:
                return received.ignore(IgnoreReason.client_mismatch)
            return received.ignore(IgnoreReason.already_disputed)

        lookup = received.to_dispute_lookup()
        original = self.source.find(record.tx, before=lookup.position)
        if original is None:
            return lookup.ignore(IgnoreReason.unknown_transaction)
        if original.client != record.client or account is None:
            return lookup.ignore(IgnoreReason.client_mismatch)
        if original.amount < 0:
            return lookup.ignore(IgnoreReason.negative_amount)
        if original.amount > account.available:
            return lookup.ignore(IgnoreReason.insufficient_funds)

        return lookup.to_processing(original).apply(self.ledger, self.disputes)

    def _process_resolve(self, received: Received) -> Outcome:
        entry, ignored = self._check_open_dispute(received)
        if ignored is not None:
            return ignored
        return received.to_resolution().to_processing(entry).apply(self.ledger, self.disputes)

    def _process_chargeback(self, received: Received) -> Outcome:
        entry, ignored = self._check_open_dispute(received)
        if ignored is not None:
            return ignored
        return received.to_chargeback().to_processing(entry).apply(self.ledger, self.disputes)

    def _check_open_dispute(self, received: Received) -> Tuple[Optional[DisputeEntry], Optional[Ignored]]:
        record = received.record
        account = self.ledger.get(record.client)

        if account is not None and account.locked:
            return None, received.ignore(IgnoreReason.account_locked)

        entry = self.disputes.get(record.tx)
        if entry is None:
            return None, received.ignore(IgnoreReason.not_disputed)
        if entry.client != record.client:
            return None, received.ignore(IgnoreReason.client_mismatch)
        return entry, None


def process_statement(
    source: RecordSource,
    ledger: Optional[AccountLedger] = None,
    log_ignored: bool = True
) -> Tuple[AccountLedger, ProcessingSummary]:
    """Run a whole source through a fresh dispute cache.

    Pass ``ledger`` to keep access to the accounts if the run fails part way.
    """
    ledger = ledger if ledger is not None else AccountLedger()
    processor = TransactionProcessor(ledger, DisputeCache(), source, log_ignored=log_ignored)
    summary = processor.run()
    return ledger, summary
