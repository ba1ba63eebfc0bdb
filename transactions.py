"""
Transaction phases.

Every record starts as ``Received`` and moves through typed phases until it
ends as ``Completed`` or ``Ignored``::

    deposit/withdrawal:  Received -> Processing -> Completed
    dispute:             Received -> DisputeLookup -> Processing -> Completed
    resolve:             Received -> Resolution -> Processing -> Completed
    chargeback:          Received -> Chargeback -> Processing -> Completed

Any non-terminal phase may instead end as ``Ignored``. Advancing a phase
consumes it: a second transition from the same object, or a transition the
record's kind does not allow, raises ``InvalidTransitionError``.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from errors import InvalidTransitionError, InvariantViolation
from models import IgnoreReason, TransactionKind, TransactionRecord
from repositories import AccountLedger, DisputeCache, DisputeEntry


@dataclass(eq=False)
class Phase:
    record: TransactionRecord
    consumed: bool = field(default=False, init=False)

    def _consume(self, target: str) -> None:
        if self.consumed:
            raise InvalidTransitionError(f"{type(self).__name__} (consumed)", target)
        self.consumed = True

    def _expect(self, kind: TransactionKind, target: str) -> None:
        if self.record.kind is not kind:
            raise InvalidTransitionError(f"{type(self).__name__}[{self.record.kind.value}]", target)

    def ignore(self, reason: IgnoreReason) -> "Ignored":
        self._consume("Ignored")
        return Ignored(self.record, reason)


@dataclass(eq=False)
class Received(Phase):
    position: int = 0

    def to_processing(self) -> "Processing":
        if not self.record.kind.moves_funds or self.record.amount is None:
            raise InvalidTransitionError(f"Received[{self.record.kind.value}]", "Processing")
        self._consume("Processing")
        return Processing(self.record, self.record.amount)

    def to_dispute_lookup(self) -> "DisputeLookup":
        self._expect(TransactionKind.dispute, "DisputeLookup")
        self._consume("DisputeLookup")
        return DisputeLookup(self.record, self.position)

    def to_resolution(self) -> "Resolution":
        self._expect(TransactionKind.resolve, "Resolution")
        self._consume("Resolution")
        return Resolution(self.record)

    def to_chargeback(self) -> "Chargeback":
        self._expect(TransactionKind.chargeback, "Chargeback")
        self._consume("Chargeback")
        return Chargeback(self.record)


@dataclass(eq=False)
class DisputeLookup(Phase):
    """Dispute waiting for the original transaction's amount."""

    position: int = 0

    def to_processing(self, original: TransactionRecord) -> "Processing":
        if original.tx != self.record.tx or original.amount is None:
            raise InvalidTransitionError("DisputeLookup", "Processing")
        self._consume("Processing")
        return Processing(self.record, original.amount)


@dataclass(eq=False)
class Resolution(Phase):
    def to_processing(self, entry: DisputeEntry) -> "Processing":
        self._consume("Processing")
        return Processing(self.record, entry.amount)


@dataclass(eq=False)
class Chargeback(Phase):
    def to_processing(self, entry: DisputeEntry) -> "Processing":
        self._consume("Processing")
        return Processing(self.record, entry.amount)


@dataclass(eq=False)
class Processing(Phase):
    """Validated transaction, ready to be applied to the ledger."""

    amount: Decimal = Decimal(0)

    def apply(self, ledger: AccountLedger, disputes: DisputeCache) -> "Completed":
        self._consume("Completed")
        record = self.record
        kind = record.kind

        if kind is TransactionKind.deposit:
            ledger.credit(record.client, self.amount)
        elif kind is TransactionKind.withdrawal:
            ledger.debit(record.client, self.amount)
        elif kind is TransactionKind.dispute:
            if not disputes.insert(record.tx, record.client, self.amount):
                raise InvariantViolation(f"tx {record.tx} is already under dispute")
            ledger.hold(record.client, self.amount)
        elif kind is TransactionKind.resolve:
            entry = disputes.pop(record.tx)
            ledger.release(entry.client, entry.amount)
        elif kind is TransactionKind.chargeback:
            entry = disputes.pop(record.tx)
            ledger.chargeback(entry.client, entry.amount)

        return Completed(self.record, self.amount)


@dataclass(eq=False)
class Completed:
    record: TransactionRecord
    amount: Decimal


@dataclass(eq=False)
class Ignored:
    record: TransactionRecord
    reason: IgnoreReason
