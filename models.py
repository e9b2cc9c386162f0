from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal

from errors import ErrorKind, TransactionError

MAX_CLIENT_ID = 2**16 - 1
MAX_TRANSACTION_ID = 2**32 - 1
DEFAULT_PRECISION = 4

ZERO = Decimal("0")


def quantize(amount: Decimal, precision: int = DEFAULT_PRECISION) -> Decimal:
    """Round an amount to ``precision`` fractional digits."""
    return amount.quantize(Decimal(1).scaleb(-precision))


class TransactionType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    dispute = "dispute"
    resolve = "resolve"
    chargeback = "chargeback"


class DisputeState(str, Enum):
    undisputed = "undisputed"
    disputed = "disputed"
    resolved = "resolved"
    charged_back = "charged_back"


# (current state, incoming event) -> next state. Anything missing is refused.
DISPUTE_TRANSITIONS: Dict[tuple, DisputeState] = {
    (DisputeState.undisputed, TransactionType.dispute): DisputeState.disputed,
    (DisputeState.disputed, TransactionType.resolve): DisputeState.resolved,
    (DisputeState.disputed, TransactionType.chargeback): DisputeState.charged_back,
}


class TransactionEvent(BaseModel):
    """One input record, as read from CSV or posted to the API."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    transaction_type: TransactionType = Field(..., alias="type", description="Transaction type")
    client_id: int = Field(..., alias="client", ge=0, le=MAX_CLIENT_ID, description="Client identifier")
    tx_id: int = Field(..., alias="tx", ge=0, le=MAX_TRANSACTION_ID, description="Transaction identifier")
    amount: Optional[Decimal] = Field(
        None,
        allow_inf_nan=False,
        description="Amount, only present for deposits and withdrawals"
    )

    @field_validator('transaction_type', mode='before')
    @classmethod
    def normalize_type(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator('amount', mode='before')
    @classmethod
    def blank_amount_is_missing(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def __repr__(self) -> str:
        return (
            f"TransactionEvent({self.transaction_type.value}, client={self.client_id}, "
            f"tx={self.tx_id}, amount={self.amount})"
        )


class TransactionRecord(BaseModel):
    """A deposit or withdrawal kept for later dispute lookups."""

    tx_id: int
    client_id: int
    kind: TransactionType
    amount: Decimal
    dispute_state: DisputeState = DisputeState.undisputed

    def next_state(self, event_type: TransactionType) -> DisputeState:
        try:
            return DISPUTE_TRANSITIONS[(self.dispute_state, event_type)]
        except KeyError:
            raise TransactionError(
                ErrorKind.INVALID_DISPUTE_STATE,
                f"cannot {event_type.value} transaction {self.tx_id} "
                f"while it is {self.dispute_state.value}"
            ) from None


class AccountSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    client_id: int = Field(..., alias="client", description="Client identifier")
    available: Decimal = Field(..., description="Funds available for withdrawal")
    held: Decimal = Field(..., description="Funds held by open disputes")
    total: Decimal = Field(..., description="Available plus held")
    locked: bool = Field(..., description="Set once a chargeback happened")


class Account(BaseModel):
    """
    Balances of a single client.

    Only ``available`` and ``held`` are stored; ``total`` is always computed
    from them. Every mutation refuses to run on a locked account.
    """

    client_id: int
    available: Decimal = ZERO
    held: Decimal = ZERO
    locked: bool = False

    @property
    def total(self) -> Decimal:
        return self.available + self.held

    def _ensure_unlocked(self) -> None:
        if self.locked:
            raise TransactionError(
                ErrorKind.ACCOUNT_LOCKED,
                f"account {self.client_id} is locked"
            )

    def deposit(self, amount: Decimal) -> None:
        self._ensure_unlocked()
        self.available += amount

    def withdraw(self, amount: Decimal) -> None:
        self._ensure_unlocked()
        if amount > self.available:
            raise TransactionError(
                ErrorKind.INSUFFICIENT_FUNDS,
                f"cannot withdraw {amount}, only {self.available} available"
            )
        self.available -= amount

    def hold(self, amount: Decimal) -> None:
        # available may go negative when the disputed funds already left
        self._ensure_unlocked()
        self.available -= amount
        self.held += amount

    def release(self, amount: Decimal) -> None:
        self._ensure_unlocked()
        self.held -= amount
        self.available += amount

    def chargeback(self, amount: Decimal) -> None:
        self._ensure_unlocked()
        self.held -= amount
        self.locked = True

    def snapshot(self, precision: int = DEFAULT_PRECISION) -> AccountSnapshot:
        return AccountSnapshot(
            client_id=self.client_id,
            available=quantize(self.available, precision),
            held=quantize(self.held, precision),
            total=quantize(self.total, precision),
            locked=self.locked,
        )


class Rejection(BaseModel):
    """An event the engine refused, kept so failures stay observable."""

    event: TransactionEvent
    kind: ErrorKind
    detail: str


class ProcessingStats(BaseModel):
    applied: int = 0
    rejected: int = 0
    by_kind: Dict[ErrorKind, int] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of known accounts")
    transactions_recorded: int = Field(..., description="Deposits and withdrawals on record")
    transactions_rejected: int = Field(..., description="Events refused so far")


class AccountsResponse(BaseModel):
    accounts: List[AccountSnapshot]
