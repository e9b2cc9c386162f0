from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from models import Account, TransactionRecord


class AccountRepository(ABC):
    @abstractmethod
    def get(self, client_id: int) -> Optional[Account]:
        """Get an account. Returns None if the client was never seen."""
        pass

    @abstractmethod
    def save(self, account: Account) -> None:
        """Insert or replace an account."""
        pass

    @abstractmethod
    def all(self) -> List[Account]:
        """Get every known account."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Get total number of accounts."""
        pass

    def get_or_create(self, client_id: int) -> Account:
        """Get an account, opening an empty one on first reference."""
        account = self.get(client_id)
        if account is None:
            account = Account(client_id=client_id)
            self.save(account)
        return account


class TransactionRepository(ABC):
    @abstractmethod
    def get(self, tx_id: int) -> Optional[TransactionRecord]:
        """Get a recorded deposit or withdrawal by transaction id."""
        pass

    @abstractmethod
    def save(self, record: TransactionRecord) -> None:
        """Insert or replace a transaction record."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Get total number of recorded transactions."""
        pass

    def exists(self, tx_id: int) -> bool:
        return self.get(tx_id) is not None


class InMemoryAccountRepository(AccountRepository):
    def __init__(self):
        self.accounts: Dict[int, Account] = {}

    def get(self, client_id: int) -> Optional[Account]:
        return self.accounts.get(client_id)

    def save(self, account: Account) -> None:
        self.accounts[account.client_id] = account

    def all(self) -> List[Account]:
        return list(self.accounts.values())

    def count(self) -> int:
        return len(self.accounts)


class InMemoryTransactionRepository(TransactionRepository):
    def __init__(self):
        self.records: Dict[int, TransactionRecord] = {}

    def get(self, tx_id: int) -> Optional[TransactionRecord]:
        return self.records.get(tx_id)

    def save(self, record: TransactionRecord) -> None:
        self.records[record.tx_id] = record

    def count(self) -> int:
        return len(self.records)


# Process-wide instances shared by the HTTP service
_account_repo = InMemoryAccountRepository()
_transaction_repo = InMemoryTransactionRepository()


def get_account_repository() -> AccountRepository:
    return _account_repo


def get_transaction_repository() -> TransactionRepository:
    return _transaction_repo


def reset_repositories():
    """Reset all repositories to an empty state (for testing only)."""
    global _account_repo, _transaction_repo
    _account_repo = InMemoryAccountRepository()
    _transaction_repo = InMemoryTransactionRepository()
