from models import AccountId


class LedgerError(Exception):
    """Base class for caller errors raised by the ledger service."""

    error_code = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidAmount(LedgerError):
    error_code = "INVALID_AMOUNT"

    def __init__(self, amount):
        super().__init__(f"Amount must be a positive integer, got {amount!r}")
        self.amount = amount


class InsufficientBalance(LedgerError):
    error_code = "INSUFFICIENT_BALANCE"

    def __init__(self, account_id: AccountId, balance: int, requested: int):
        super().__init__(
            f"Insufficient balance for account {account_id}: "
            f"balance {balance}, requested {requested}"
        )
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
