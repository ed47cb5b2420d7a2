from datetime import datetime

from pydantic import BaseModel


class AccountSnapshot(BaseModel):
    """Immutable view of an account at one version."""
    model_config = {"from_attributes": True, "frozen": True}

    account_id: str
    credit_balance: int
    wallet_balance: int
    opening_credit_balance: int = 0
    opening_wallet_balance: int = 0
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BalanceResponse(BaseModel):
    model_config = {"from_attributes": True}

    account_id: str
    credit_balance: int
    wallet_balance: int  # kobo
    version: int
