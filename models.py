from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from enum import Enum
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal
import re

# Fixed-point scale shared by every monetary value.
SCALE = Decimal("0.0001")

MAX_CLIENT_ID = 2**16 - 1
MAX_TRANSACTION_ID = 2**32 - 1

# 24 integer digits + 4 fractional digits fit the 28-digit decimal context.
MAX_AMOUNT = Decimal("1e24")

_DIGITS = re.compile(r"[0-9]+")


def to_fixed(value: Decimal) -> Decimal:
    """Quantize a monetary value to the ledger's fixed scale."""
    return value.quantize(SCALE)


def parse_identifier(value):
    """Client and transaction ids are plain unsigned integers: ``"7"``, never ``"7.0"``."""
    if isinstance(value, str):
        value = value.strip()
        if not _DIGITS.fullmatch(value):
            raise ValueError("must be an unsigned integer")
        return int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("must be an unsigned integer")
    return value


class TransactionKind(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    dispute = "dispute"
    resolve = "resolve"
    chargeback = "chargeback"

    @property
    def moves_funds(self) -> bool:
        """Deposits and withdrawals carry their own amount; the rest reference one."""
        return self in (TransactionKind.deposit, TransactionKind.withdrawal)


class IgnoreReason(str, Enum):
    negative_amount = "negative_amount"
    account_locked = "account_locked"
    insufficient_funds = "insufficient_funds"
    unknown_transaction = "unknown_transaction"
    client_mismatch = "client_mismatch"
    already_disputed = "already_disputed"
    not_disputed = "not_disputed"


class TransactionRecord(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: TransactionKind = Field(..., alias="type", description="Transaction type")
    client: int = Field(..., ge=0, le=MAX_CLIENT_ID, description="Client identifier")
    tx: int = Field(..., ge=0, le=MAX_TRANSACTION_ID, description="Transaction identifier")
    amount: Optional[Decimal] = Field(
        None,
        decimal_places=4,
        allow_inf_nan=False,
        gt=-MAX_AMOUNT,
        lt=MAX_AMOUNT,
        description="Transacted amount, deposits and withdrawals only"
    )

    @field_validator("client", "tx", mode="before")
    @classmethod
    def strict_identifier(cls, v):
        return parse_identifier(v)

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("amount", mode="before")
    @classmethod
    def blank_amount_is_absent(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def require_amount(self):
        if self.kind.moves_funds and self.amount is None:
            raise ValueError(f"{self.kind.value} requires an amount")
        return self


class AccountSnapshot(BaseModel):
    client: int = Field(..., description="Client identifier")
    available: Decimal = Field(..., description="Funds available for withdrawal or dispute")
    held: Decimal = Field(..., description="Funds held by active disputes")
    total: Decimal = Field(..., description="available + held")
    locked: bool = Field(..., description="Account frozen by a chargeback")

    @field_validator("available", "held", "total")
    @classmethod
    def fixed_scale(cls, v):
        return to_fixed(v)


class ProcessingSummary(BaseModel):
    records: int = Field(0, description="Records read from the source")
    applied: int = Field(0, description="Records applied to the ledger")
    ignored: Dict[IgnoreReason, int] = Field(
        default_factory=dict,
        description="Records rejected by business rules, per reason"
    )

    @property
    def ignored_count(self) -> int:
        return sum(self.ignored.values())

    def record_applied(self) -> None:
        self.records += 1
        self.applied += 1

    def record_ignored(self, reason: IgnoreReason) -> None:
        self.records += 1
        self.ignored[reason] = self.ignored.get(reason, 0) + 1


class StatementResponse(BaseModel):
    accounts: List[AccountSnapshot] = Field(..., description="Final account balances")
    summary: ProcessingSummary = Field(..., description="Processing statistics")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    lookup_strategy: str = Field(..., description="Dispute lookup strategy in use")
