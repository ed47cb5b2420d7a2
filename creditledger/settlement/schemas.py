import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from creditledger.ledger.schemas import LedgerResultResponse
from creditledger.settlement.models import CollaborationStatus, OfferStatus, TerritoryStatus


class BundleResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    name: str
    credits: int
    bonus_credits: int
    price: int  # kobo
    popular: bool
    active: bool


class PurchaseCreditsRequest(BaseModel):
    bundle_id: str
    # Payment gateway (Paystack) reference; doubles as the idempotency key
    payment_reference: str = Field(min_length=1, max_length=255)


class PurchaseCreditsResponse(BaseModel):
    bundle_id: str
    credits_added: int
    new_balance: int | None
    settlement: LedgerResultResponse


class VerifyPaymentResponse(BaseModel):
    reference: str
    status: str  # pending | completed | failed
    credits: int
    new_balance: int
    wallet_balance: int


class PaymentStatusResponse(BaseModel):
    status: str
    configured: bool
    payment_gateway: str = "paystack"


class LoadWalletRequest(BaseModel):
    amount: int = Field(gt=0)  # kobo
    payment_reference: str = Field(min_length=1, max_length=255)


class OfferResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    agent_id: str
    offer_type: str
    title: str | None
    credit_cost: int
    status: OfferStatus
    purchased_by: str | None
    purchased_at: datetime | None


class CollaborationResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: uuid.UUID
    offer_id: str | None
    collaboration_type: str
    from_agent_id: str
    to_agent_id: str
    credits: int
    status: CollaborationStatus
    completed_at: datetime | None


class OfferPurchaseResponse(BaseModel):
    offer: OfferResponse
    collaboration: CollaborationResponse | None = None
    new_balance: int | None
    settlement: LedgerResultResponse


class CollaborationCompleteResponse(BaseModel):
    collaboration: CollaborationResponse
    # None when the collaboration was prepaid by an offer purchase
    settlement: LedgerResultResponse | None = None


class ClaimTerritoryRequest(BaseModel):
    area: str = Field(min_length=1, max_length=128)
    state: str = "Lagos"
    cost: int = Field(gt=0)
    # Client-generated per claim attempt; retrying the same attempt is safe
    attempt_id: uuid.UUID


class TerritoryResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: uuid.UUID
    agent_id: str
    area: str
    state: str
    cost: int
    status: TerritoryStatus
    claimed_at: datetime | None


class ClaimTerritoryResponse(BaseModel):
    territory: TerritoryResponse
    new_balance: int | None
    settlement: LedgerResultResponse
