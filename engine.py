from collections import Counter, deque
from decimal import Decimal, InvalidOperation
from typing import Callable, Deque, Dict, Iterable, Optional

import structlog

from errors import ErrorKind, TransactionError
from models import (
    DEFAULT_PRECISION,
    ZERO,
    Account,
    AccountSnapshot,
    ProcessingStats,
    Rejection,
    TransactionEvent,
    TransactionRecord,
    TransactionType,
    quantize,
)
from repositories import (
    AccountRepository,
    TransactionRepository,
    get_account_repository,
    get_transaction_repository,
    reset_repositories,
)

logger = structlog.get_logger(__name__)

DEFAULT_REJECTION_LOG_SIZE = 1000


class PaymentsEngine:
    """
    Applies transaction events to client accounts, one at a time and in order.

    ``execute`` applies a single event and raises ``TransactionError`` when it
    is refused. ``process`` drives a whole batch and keeps going past refused
    events; each refusal is logged and counted, and the most recent ones are
    kept in ``rejections``.

    An event is applied to a copy of the account and only committed once the
    resulting balances are still representable at ``precision``.
    """

    def __init__(
        self,
        account_repo: AccountRepository,
        transaction_repo: TransactionRepository,
        precision: int = DEFAULT_PRECISION,
        rejection_log_size: int = DEFAULT_REJECTION_LOG_SIZE
    ):
        self.account_repo = account_repo
        self.transaction_repo = transaction_repo
        self.precision = precision
        self.rejections: Deque[Rejection] = deque(maxlen=rejection_log_size)
        self._applied = 0
        self._rejected: Counter = Counter()
        self._handlers: Dict[TransactionType, Callable[[Account, TransactionEvent], TransactionRecord]] = {
            TransactionType.deposit: self._deposit,
            TransactionType.withdrawal: self._withdraw,
            TransactionType.dispute: self._transition,
            TransactionType.resolve: self._transition,
            TransactionType.chargeback: self._transition,
        }

    def process(self, events: Iterable[TransactionEvent]) -> Dict[int, AccountSnapshot]:
        """Apply every event, skipping refused ones, and return the final accounts."""
        for event in events:
            try:
                self.execute(event)
            except TransactionError:
                continue
        return self.accounts()

    def execute(self, event: TransactionEvent) -> Account:
        """Apply one event and return the affected account."""
        try:
            account = self._apply(event)
        except TransactionError as e:
            self._reject(event, e)
            raise

        self._applied += 1
        logger.debug(
            "Transaction applied",
            client=event.client_id,
            tx=event.tx_id,
            type=event.transaction_type.value,
            available=str(account.available),
            held=str(account.held)
        )
        return account

    def accounts(self) -> Dict[int, AccountSnapshot]:
        """Snapshot of every account, ordered by client id."""
        return {
            account.client_id: account.snapshot(self.precision)
            for account in sorted(self.account_repo.all(), key=lambda a: a.client_id)
        }

    def stats(self) -> ProcessingStats:
        return ProcessingStats(
            applied=self._applied,
            rejected=sum(self._rejected.values()),
            by_kind=dict(self._rejected)
        )

    def _apply(self, event: TransactionEvent) -> Account:
        account = self.account_repo.get_or_create(event.client_id)
        if account.locked:
            raise TransactionError(
                ErrorKind.ACCOUNT_LOCKED,
                f"account {account.client_id} is locked"
            )

        working = account.model_copy()
        record = self._handlers[event.transaction_type](working, event)
        self._ensure_representable(working)

        self.account_repo.save(working)
        self.transaction_repo.save(record)
        return working

    def _ensure_representable(self, account: Account) -> None:
        # quantize fails once a balance needs more digits than the decimal context holds
        try:
            account.snapshot(self.precision)
        except InvalidOperation:
            raise TransactionError(
                ErrorKind.MALFORMED_AMOUNT,
                f"balance of account {account.client_id} would exceed the supported range"
            ) from None

    def _reject(self, event: TransactionEvent, error: TransactionError) -> None:
        self._rejected[error.kind] += 1
        self.rejections.append(Rejection(event=event, kind=error.kind, detail=error.detail))
        logger.warning(
            "Transaction rejected",
            client=event.client_id,
            tx=event.tx_id,
            type=event.transaction_type.value,
            error_code=error.kind.value,
            detail=error.detail
        )

    def _deposit(self, account: Account, event: TransactionEvent) -> TransactionRecord:
        amount = self._validated_amount(event)
        self._ensure_new_transaction(event)
        account.deposit(amount)
        return self._new_record(event, amount)

    def _withdraw(self, account: Account, event: TransactionEvent) -> TransactionRecord:
        amount = self._validated_amount(event)
        self._ensure_new_transaction(event)
        account.withdraw(amount)
        return self._new_record(event, amount)

    def _transition(self, account: Account, event: TransactionEvent) -> TransactionRecord:
        """Move a recorded transaction through its dispute lifecycle."""
        record = self.transaction_repo.get(event.tx_id)
        if record is None:
            raise TransactionError(
                ErrorKind.UNKNOWN_TRANSACTION,
                f"transaction {event.tx_id} not found"
            )
        if record.client_id != event.client_id:
            raise TransactionError(
                ErrorKind.CLIENT_MISMATCH,
                f"transaction {event.tx_id} belongs to client {record.client_id}"
            )

        # Refuse before touching the account
        new_state = record.next_state(event.transaction_type)

        if event.transaction_type == TransactionType.dispute:
            account.hold(record.amount)
        elif event.transaction_type == TransactionType.resolve:
            account.release(record.amount)
        else:
            account.chargeback(record.amount)

        return record.model_copy(update={"dispute_state": new_state})

    def _validated_amount(self, event: TransactionEvent) -> Decimal:
        amount = event.amount
        if amount is None:
            raise TransactionError(
                ErrorKind.MALFORMED_AMOUNT,
                f"{event.transaction_type.value} {event.tx_id} has no amount"
            )
        if amount < ZERO:
            raise TransactionError(
                ErrorKind.MALFORMED_AMOUNT,
                f"{event.transaction_type.value} {event.tx_id} has negative amount {amount}"
            )
        try:
            exact = quantize(amount, self.precision) == amount
        except InvalidOperation:
            exact = False
        if not exact:
            raise TransactionError(
                ErrorKind.MALFORMED_AMOUNT,
                f"amount {amount} has more than {self.precision} decimal places"
            )
        return amount

    def _ensure_new_transaction(self, event: TransactionEvent) -> None:
        if self.transaction_repo.exists(event.tx_id):
            raise TransactionError(
                ErrorKind.DUPLICATE_TRANSACTION_ID,
                f"transaction {event.tx_id} already recorded"
            )

    def _new_record(self, event: TransactionEvent, amount: Decimal) -> TransactionRecord:
        return TransactionRecord(
            tx_id=event.tx_id,
            client_id=event.client_id,
            kind=event.transaction_type,
            amount=amount
        )


# Process-wide engine used by the HTTP service
_engine: Optional[PaymentsEngine] = None


def get_payments_engine(
    precision: int = DEFAULT_PRECISION,
    rejection_log_size: int = DEFAULT_REJECTION_LOG_SIZE
) -> PaymentsEngine:
    global _engine
    if _engine is None:
        _engine = PaymentsEngine(
            get_account_repository(),
            get_transaction_repository(),
            precision=precision,
            rejection_log_size=rejection_log_size
        )
    return _engine


def reset_payments_engine() -> None:
    """Drop the shared engine and its state (for testing only)."""
    global _engine
    reset_repositories()
    _engine = None
