import pytest
import asyncio

from exceptions import InsufficientBalance
from locks import KeyLockRegistry
from models import TransactionType
from repositories import InMemoryBalanceRepository, InMemoryHistoryRepository
from services import LedgerService


@pytest.fixture
def service():
    """Service over stores that suspend on every call, so tasks interleave."""
    return LedgerService(
        InMemoryBalanceRepository(latency_ms=3),
        InMemoryHistoryRepository(latency_ms=3),
        KeyLockRegistry()
    )


class TestConcurrentCharge:
    """Test concurrent charges on one account."""

    @pytest.mark.asyncio
    async def test_concurrent_charges_accumulate(self, service):
        """100 concurrent charges of 100 must all be applied."""
        results = await asyncio.gather(*(service.charge(100, 100) for _ in range(100)))

        assert len(results) == 100
        assert (await service.get_balance(100)).amount == 100 * 100

        history = await service.get_history(100)
        assert len(history) == 100
        assert all(r.type == TransactionType.CHARGE for r in history)

    @pytest.mark.asyncio
    async def test_returned_balances_are_distinct(self, service):
        """Every charge observes the committed state of the previous one."""
        results = await asyncio.gather(*(service.charge(1, 10) for _ in range(20)))

        assert sorted(r.amount for r in results) == [10 * i for i in range(1, 21)]


class TestConcurrentUse:
    """Test concurrent uses that together exceed the balance."""

    @pytest.mark.asyncio
    async def test_concurrent_use_never_overdraws(self, service):
        initial_balance = 10_000
        use_amount = 1_000
        task_count = 50

        await service.charge(200, initial_balance)

        results = await asyncio.gather(
            *(service.use(200, use_amount) for _ in range(task_count)),
            return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, InsufficientBalance)]
        assert len(successes) + len(failures) == task_count

        final_balance = (await service.get_balance(200)).amount
        assert final_balance >= 0
        assert len(successes) == initial_balance // use_amount
        assert initial_balance == len(successes) * use_amount + final_balance

        history = await service.get_history(200)
        use_records = [r for r in history if r.type == TransactionType.USE]
        assert len(use_records) == len(successes)

    @pytest.mark.asyncio
    async def test_uneven_draws_respect_balance(self, service):
        await service.charge(1, 1000)

        results = await asyncio.gather(
            *(service.use(1, 300) for _ in range(10)),
            return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 3
        assert (await service.get_balance(1)).amount == 100


class TestMixedOperations:
    """Test interleaved charges and uses."""

    @pytest.mark.asyncio
    async def test_history_replays_to_balance(self, service):
        operations = []
        for i in range(60):
            if i % 3 == 0:
                operations.append(service.charge(5, 70))
            else:
                operations.append(service.use(5, 40))

        results = await asyncio.gather(*operations, return_exceptions=True)

        unexpected = [
            r for r in results
            if isinstance(r, Exception) and not isinstance(r, InsufficientBalance)
        ]
        assert unexpected == []

        successes = [r for r in results if not isinstance(r, Exception)]
        history = await service.get_history(5)
        balance = (await service.get_balance(5)).amount

        assert len(history) == len(successes)
        assert sum(r.signed_amount for r in history) == balance
        assert balance >= 0

        running = 0
        for record in history:
            running += record.signed_amount
            assert running >= 0

    @pytest.mark.asyncio
    async def test_accounts_are_independent(self, service):
        tasks = []
        for account_id in range(5):
            tasks.extend(service.charge(account_id, account_id + 1) for _ in range(10))

        await asyncio.gather(*tasks)

        for account_id in range(5):
            assert (await service.get_balance(account_id)).amount == 10 * (account_id + 1)
            assert len(await service.get_history(account_id)) == 10


class TestLockScope:
    """Test that a held account lock only blocks that account's mutations."""

    @pytest.mark.asyncio
    async def test_other_accounts_not_blocked(self, service):
        async with service.lock_registry.get_lock(1):
            result = await asyncio.wait_for(service.charge(2, 10), timeout=2)

        assert result.amount == 10

    @pytest.mark.asyncio
    async def test_reads_not_blocked(self, service):
        await service.charge(1, 10)

        async with service.lock_registry.get_lock(1):
            balance = await asyncio.wait_for(service.get_balance(1), timeout=2)
            history = await asyncio.wait_for(service.get_history(1), timeout=2)

        assert balance.amount == 10
        assert len(history) == 1

    @pytest.mark.asyncio
    async def test_same_account_waits_for_lock(self, service):
        lock = service.lock_registry.get_lock(1)

        async with lock:
            task = asyncio.create_task(service.charge(1, 10))
            await asyncio.sleep(0.05)
            assert not task.done()
            assert (await service.get_balance(1)).amount == 0

        result = await asyncio.wait_for(task, timeout=2)
        assert result.amount == 10
