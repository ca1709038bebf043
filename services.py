from datetime import datetime
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo
import structlog

from config import get_settings
from exceptions import InsufficientBalance, InvalidAmount
from locks import KeyLockRegistry
from models import AccountBalance, AccountId, TransactionRecord, TransactionType
from repositories import BalanceRepository, HistoryRepository

# Configure structured logging
logger = structlog.get_logger()


def _default_clock() -> datetime:
    return datetime.now(ZoneInfo(get_settings().timezone))


class LedgerService:
    """Point balances and history with per-account serialization of mutations.

    charge and use run their read-validate-write-append sequence while holding
    the account's lock from the registry. Reads never take the lock.
    """

    def __init__(
        self,
        balance_repo: BalanceRepository,
        history_repo: HistoryRepository,
        lock_registry: KeyLockRegistry,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.balance_repo = balance_repo
        self.history_repo = history_repo
        self.lock_registry = lock_registry
        self.clock = clock or _default_clock

    async def get_balance(self, account_id: AccountId) -> AccountBalance:
        return await self.balance_repo.get_balance(account_id)

    async def get_history(self, account_id: AccountId) -> List[TransactionRecord]:
        return await self.history_repo.list_all(account_id)

    async def charge(self, account_id: AccountId, amount: int) -> AccountBalance:
        """Add points to an account and record a CHARGE."""
        self._validate_amount(account_id, amount, TransactionType.CHARGE)

        logger.info("Processing charge", account_id=account_id, amount=amount)

        async with self.lock_registry.get_lock(account_id):
            current = await self.balance_repo.get_balance(account_id)
            new_amount = current.amount + amount

            logger.debug(
                "Charge computed",
                account_id=account_id,
                amount=amount,
                old_balance=current.amount,
                new_balance=new_amount
            )

            updated = await self._commit(account_id, amount, new_amount, TransactionType.CHARGE)

        logger.info("Charge processed successfully", account_id=account_id, new_balance=updated.amount)
        return updated

    async def use(self, account_id: AccountId, amount: int) -> AccountBalance:
        """Spend points from an account and record a USE.

        Raises InsufficientBalance, leaving balance and history untouched,
        when the account holds less than ``amount``.
        """
        self._validate_amount(account_id, amount, TransactionType.USE)

        logger.info("Processing use", account_id=account_id, amount=amount)

        async with self.lock_registry.get_lock(account_id):
            current = await self.balance_repo.get_balance(account_id)

            if current.amount < amount:
                logger.warning(
                    "Insufficient balance for use",
                    account_id=account_id,
                    current_balance=current.amount,
                    requested_amount=amount
                )
                raise InsufficientBalance(account_id, current.amount, amount)

            new_amount = current.amount - amount

            logger.debug(
                "Use computed",
                account_id=account_id,
                amount=amount,
                old_balance=current.amount,
                new_balance=new_amount
            )

            updated = await self._commit(account_id, amount, new_amount, TransactionType.USE)

        logger.info("Use processed successfully", account_id=account_id, new_balance=updated.amount)
        return updated

    def _validate_amount(self, account_id: AccountId, amount: int, type: TransactionType) -> None:
        # bool is an int subclass but never a meaningful amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            logger.warning(
                "Invalid amount",
                account_id=account_id,
                amount=repr(amount),
                type=type.value
            )
            raise InvalidAmount(amount)

    async def _commit(
        self,
        account_id: AccountId,
        amount: int,
        new_amount: int,
        type: TransactionType
    ) -> AccountBalance:
        # Must be called with the account lock held
        timestamp = self.clock()
        last = await self.history_repo.get_last(account_id)
        if last is not None and last.timestamp > timestamp:
            timestamp = last.timestamp

        updated = await self.balance_repo.update_balance(account_id, new_amount, timestamp)
        await self.history_repo.append(account_id, amount, type, timestamp)
        return updated


# Factory function for dependency injection
def get_ledger_service(
    balance_repo: BalanceRepository,
    history_repo: HistoryRepository,
    lock_registry: KeyLockRegistry
) -> LedgerService:
    return LedgerService(balance_repo, history_repo, lock_registry)
