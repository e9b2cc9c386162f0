from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Every reason an individual transaction can be rejected."""

    MALFORMED_AMOUNT = "malformed_amount"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ACCOUNT_LOCKED = "account_locked"
    UNKNOWN_TRANSACTION = "unknown_transaction"
    CLIENT_MISMATCH = "client_mismatch"
    INVALID_DISPUTE_STATE = "invalid_dispute_state"
    DUPLICATE_TRANSACTION_ID = "duplicate_transaction_id"


class TransactionError(Exception):
    """A single event could not be applied. The account is left untouched."""

    def __init__(self, kind: ErrorKind, detail: Optional[str] = None):
        self.kind = kind
        self.detail = detail or kind.value.replace("_", " ")
        super().__init__(self.detail)

    def __repr__(self) -> str:
        return f"TransactionError({self.kind.value}, {self.detail!r})"


class InputError(Exception):
    """The input stream itself is unusable; the whole run is aborted."""
