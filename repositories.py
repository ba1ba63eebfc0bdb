from contextlib import contextmanager
from dataclasses import dataclass
from decimal import (
    Context, Decimal, DecimalException, DivisionByZero, Inexact, InvalidOperation,
    Overflow, localcontext,
)
from typing import Callable, Dict, Iterator, NamedTuple, Optional

from errors import InvariantViolation
from models import AccountSnapshot, to_fixed

ZERO = to_fixed(Decimal(0))

# Balance arithmetic must be exact: anything that would round or overflow traps.
FIXED_POINT = Context(prec=28, traps=[InvalidOperation, Inexact, DivisionByZero, Overflow])


@contextmanager
def fixed_point(client: int):
    try:
        with localcontext(FIXED_POINT):
            yield
    except DecimalException as exc:
        raise InvariantViolation(
            f"Balance for client {client} left the fixed-point range: {exc!r}"
        ) from exc


@dataclass
class Account:
    client: int
    available: Decimal = ZERO
    held: Decimal = ZERO
    total: Decimal = ZERO
    locked: bool = False

    def snapshot(self) -> AccountSnapshot:
        return AccountSnapshot(
            client=self.client,
            available=self.available,
            held=self.held,
            total=self.total,
            locked=self.locked
        )


class AccountLedger:
    """Owns every client account and the balance-mutating operations on them.

    Callers are expected to enforce business rules (lock state, sufficient
    funds, non-negative amounts) before calling in. The ledger only asserts
    that no operation breaks ``total == available + held`` or drives a
    balance negative, and raises ``InvariantViolation`` if one would.
    """

    def __init__(self):
        self.accounts: Dict[int, Account] = {}

    def __len__(self) -> int:
        return len(self.accounts)

    def __contains__(self, client: int) -> bool:
        return client in self.accounts

    def get(self, client: int) -> Optional[Account]:
        return self.accounts.get(client)

    def open(self, client: int) -> Account:
        """Get the client's account, creating an empty one on first use."""
        account = self.accounts.get(client)
        if account is None:
            account = self.accounts[client] = Account(client=client)
        return account

    def credit(self, client: int, amount: Decimal) -> Account:
        account = self._existing(client)
        with fixed_point(client):
            amount = to_fixed(amount)
            return self._commit(
                account,
                available=account.available + amount,
                held=account.held,
                total=account.total + amount
            )

    def debit(self, client: int, amount: Decimal) -> Account:
        account = self._existing(client)
        with fixed_point(client):
            amount = to_fixed(amount)
            if amount > account.available:
                raise InvariantViolation(
                    f"debit of {amount} exceeds available {account.available} for client {client}"
                )
            return self._commit(
                account,
                available=account.available - amount,
                held=account.held,
                total=account.total - amount
            )

    def hold(self, client: int, amount: Decimal) -> Account:
        account = self._existing(client)
        with fixed_point(client):
            amount = to_fixed(amount)
            return self._commit(
                account,
                available=account.available - amount,
                held=account.held + amount,
                total=account.total
            )

    def release(self, client: int, amount: Decimal) -> Account:
        account = self._existing(client)
        with fixed_point(client):
            amount = to_fixed(amount)
            return self._commit(
                account,
                available=account.available + amount,
                held=account.held - amount,
                total=account.total
            )

    def chargeback(self, client: int, amount: Decimal) -> Account:
        account = self._existing(client)
        with fixed_point(client):
            amount = to_fixed(amount)
            return self._commit(
                account,
                available=account.available,
                held=account.held - amount,
                total=account.total - amount,
                locked=True
            )


    def snapshots(self) -> Iterator[AccountSnapshot]:
        for client in sorted(self.accounts):
            yield self.accounts[client].snapshot()

    def drain(self, sink: Callable[[AccountSnapshot], None]) -> int:
        """Hand every account snapshot to ``sink``; returns how many were written."""
        count = 0
        for snapshot in self.snapshots():
            sink(snapshot)
            count += 1
        return count

    def _existing(self, client: int) -> Account:
        account = self.accounts.get(client)
        if account is None:
            raise InvariantViolation(f"No account for client {client}")
        return account

    def _commit(
        self,
        account: Account,
        available: Decimal,
        held: Decimal,
        total: Decimal,
        locked: Optional[bool] = None
    ) -> Account:
        # Nothing is written unless every check passes.
        if available < 0 or held < 0:
            raise InvariantViolation(
                f"Negative balance for client {account.client}: "
                f"available={available} held={held}"
            )
        if total != available + held:
            raise InvariantViolation(
                f"Unbalanced account for client {account.client}: "
                f"total={total} available={available} held={held}"
            )
        account.available = available
        account.held = held
        account.total = total
        if locked is not None:
            account.locked = locked
        return account


class DisputeEntry(NamedTuple):
    client: int
    amount: Decimal


class DisputeCache:
    """Transactions currently under dispute, keyed by transaction id."""

    def __init__(self):
        self.entries: Dict[int, DisputeEntry] = {}

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, tx: int) -> bool:
        return tx in self.entries

    def get(self, tx: int) -> Optional[DisputeEntry]:
        return self.entries.get(tx)

    def insert(self, tx: int, client: int, amount: Decimal) -> bool:
        """Insert an entry unless one already exists. Returns True if inserted."""
        if tx in self.entries:
            return False
        self.entries[tx] = DisputeEntry(client, to_fixed(amount))
        return True

    def pop(self, tx: int) -> DisputeEntry:
        try:
            return self.entries.pop(tx)
        except KeyError:
            raise InvariantViolation(f"Dispute entry for tx {tx} vanished") from None
