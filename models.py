from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from typing import Optional, Union
from datetime import datetime


# Opaque account key; the HTTP surface uses integer ids
AccountId = Union[int, str]


class TransactionType(str, Enum):
    CHARGE = "CHARGE"
    USE = "USE"


class AccountBalance(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: AccountId = Field(..., description="Account identifier")
    amount: int = Field(0, ge=0, description="Current point balance")
    updated_at: Optional[datetime] = Field(
        None,
        description="Time of the last write, None if the account was never written"
    )


class TransactionRecord(BaseModel):
    """One successful charge or use. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1, description="Process-wide insertion sequence")
    account_id: AccountId = Field(..., description="Account identifier")
    amount: int = Field(..., gt=0, description="Points charged or used")
    type: TransactionType = Field(..., description="Transaction type")
    timestamp: datetime = Field(..., description="Transaction timestamp")

    @property
    def signed_amount(self) -> int:
        return self.amount if self.type == TransactionType.CHARGE else -self.amount


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts with a stored balance")
    transactions_processed: int = Field(..., description="Total transaction records")
