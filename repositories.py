from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from datetime import datetime
import asyncio
import itertools
import random
from collections import defaultdict

from config import get_settings
from locks import reset_lock_registry
from models import AccountBalance, AccountId, TransactionRecord, TransactionType


class BalanceRepository(ABC):
    @abstractmethod
    async def get_balance(self, account_id: AccountId) -> AccountBalance:
        """Get account balance. Returns a zero balance if the account was never written."""
        pass

    @abstractmethod
    async def update_balance(
        self,
        account_id: AccountId,
        amount: int,
        updated_at: Optional[datetime] = None
    ) -> AccountBalance:
        """Unconditionally set account balance and return the stored value."""
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts with a stored balance."""
        pass


class HistoryRepository(ABC):
    @abstractmethod
    async def append(
        self,
        account_id: AccountId,
        amount: int,
        type: TransactionType,
        timestamp: datetime
    ) -> TransactionRecord:
        """Append a transaction record to the account's history."""
        pass

    @abstractmethod
    async def list_all(self, account_id: AccountId) -> List[TransactionRecord]:
        """Get all records for an account, oldest first."""
        pass

    @abstractmethod
    async def get_last(self, account_id: AccountId) -> Optional[TransactionRecord]:
        """Get the most recent record for an account, None if there is none."""
        pass

    @abstractmethod
    async def get_records_count(self) -> int:
        """Get total number of stored records."""
        pass


class _ThrottledRepository:
    """Adds a random delay of up to latency_ms to each store call."""

    def __init__(self, latency_ms: int = 0):
        self.latency_ms = latency_ms

    async def _throttle(self) -> None:
        if self.latency_ms > 0:
            await asyncio.sleep(random.randint(0, self.latency_ms) / 1000)


class InMemoryBalanceRepository(_ThrottledRepository, BalanceRepository):
    def __init__(self, latency_ms: int = 0):
        super().__init__(latency_ms)
        self.balances: Dict[AccountId, AccountBalance] = {}

    async def get_balance(self, account_id: AccountId) -> AccountBalance:
        await self._throttle()
        balance = self.balances.get(account_id)
        if balance is None:
            return AccountBalance(account_id=account_id, amount=0)
        return balance

    async def update_balance(
        self,
        account_id: AccountId,
        amount: int,
        updated_at: Optional[datetime] = None
    ) -> AccountBalance:
        await self._throttle()
        # Stored values are frozen models, so readers see either the old or the new one
        balance = AccountBalance(account_id=account_id, amount=amount, updated_at=updated_at)
        self.balances[account_id] = balance
        return balance

    async def get_accounts_count(self) -> int:
        return len(self.balances)


class InMemoryHistoryRepository(_ThrottledRepository, HistoryRepository):
    def __init__(self, latency_ms: int = 0):
        super().__init__(latency_ms)
        self.records: Dict[AccountId, List[TransactionRecord]] = defaultdict(list)
        self._sequence = itertools.count(1)

    async def append(
        self,
        account_id: AccountId,
        amount: int,
        type: TransactionType,
        timestamp: datetime
    ) -> TransactionRecord:
        await self._throttle()
        record = TransactionRecord(
            id=next(self._sequence),
            account_id=account_id,
            amount=amount,
            type=type,
            timestamp=timestamp
        )
        self.records[account_id].append(record)
        return record

    async def list_all(self, account_id: AccountId) -> List[TransactionRecord]:
        await self._throttle()
        return list(self.records.get(account_id, ()))

    async def get_last(self, account_id: AccountId) -> Optional[TransactionRecord]:
        records = self.records.get(account_id)
        return records[-1] if records else None

    async def get_records_count(self) -> int:
        return sum(len(records) for records in self.records.values())


def _build_repositories():
    latency_ms = get_settings().store_latency_ms
    return InMemoryBalanceRepository(latency_ms), InMemoryHistoryRepository(latency_ms)


# Singleton instances (in production, use dependency injection)
_balance_repo, _history_repo = _build_repositories()


def get_balance_repository() -> BalanceRepository:
    return _balance_repo


def get_history_repository() -> HistoryRepository:
    return _history_repo


# For tests
def reset_repositories():
    """Reset all repositories and account locks to initial state (for testing only)."""
    global _balance_repo, _history_repo
    _balance_repo, _history_repo = _build_repositories()
    reset_lock_registry()
