import uuid

from fastapi import APIRouter

from creditledger.core.dependencies import CurrentPrincipal, DbSession, Ledger
from creditledger.core.exceptions import ForbiddenError
from creditledger.ledger.schemas import LedgerResultResponse
from creditledger.settlement import service as settlement_service
from creditledger.settlement.schemas import (
    BundleResponse,
    ClaimTerritoryRequest,
    ClaimTerritoryResponse,
    CollaborationCompleteResponse,
    CollaborationResponse,
    LoadWalletRequest,
    OfferPurchaseResponse,
    OfferResponse,
    PaymentStatusResponse,
    PurchaseCreditsRequest,
    PurchaseCreditsResponse,
    TerritoryResponse,
    VerifyPaymentResponse,
)

router = APIRouter(tags=["settlement"])


# ── Credits ───────────────────────────────────────────────────────────────────


@router.get("/credits/bundles", response_model=list[BundleResponse])
async def list_bundles(db: DbSession):
    return await settlement_service.list_bundles(db)


@router.get("/credits/status", response_model=PaymentStatusResponse)
async def payment_status():
    configured = settlement_service.payment_gateway_configured()
    return PaymentStatusResponse(
        status="available" if configured else "unconfigured",
        configured=configured,
    )


@router.post("/credits/purchase", response_model=PurchaseCreditsResponse)
async def purchase_credits(
    body: PurchaseCreditsRequest, principal: CurrentPrincipal, db: DbSession, ledger: Ledger
):
    bundle, result = await settlement_service.purchase_bundle(
        db, ledger, principal.account_id, body.bundle_id, body.payment_reference
    )
    return PurchaseCreditsResponse(
        bundle_id=bundle.id,
        credits_added=result.transaction.amount,
        new_balance=result.to_balance,
        settlement=LedgerResultResponse.from_result(result),
    )


@router.get("/credits/verify/{reference}", response_model=VerifyPaymentResponse)
async def verify_payment(reference: str, principal: CurrentPrincipal, ledger: Ledger):
    tx, account = await settlement_service.verify_payment(ledger, principal.account_id, reference)
    return VerifyPaymentResponse(
        reference=reference,
        status=tx.status.value,
        credits=tx.amount,
        new_balance=account.credit_balance,
        wallet_balance=account.wallet_balance,
    )


# ── Wallet ────────────────────────────────────────────────────────────────────


@router.post("/wallet/load", response_model=LedgerResultResponse)
async def load_wallet(body: LoadWalletRequest, principal: CurrentPrincipal, ledger: Ledger):
    result = await settlement_service.load_wallet(
        ledger, principal.account_id, body.amount, body.payment_reference
    )
    return LedgerResultResponse.from_result(result)


# ── Marketplace ───────────────────────────────────────────────────────────────


@router.post("/marketplace/offers/{offer_id}/purchase", response_model=OfferPurchaseResponse)
async def purchase_offer(offer_id: str, principal: CurrentPrincipal, db: DbSession, ledger: Ledger):
    offer, collaboration, result = await settlement_service.purchase_offer(
        db, ledger, principal.account_id, offer_id
    )
    return OfferPurchaseResponse(
        offer=OfferResponse.model_validate(offer),
        collaboration=(
            CollaborationResponse.model_validate(collaboration) if collaboration else None
        ),
        new_balance=result.from_balance,
        settlement=LedgerResultResponse.from_result(result),
    )


@router.post(
    "/marketplace/collaborations/{collaboration_id}/complete",
    response_model=CollaborationCompleteResponse,
)
async def complete_collaboration(
    collaboration_id: uuid.UUID, principal: CurrentPrincipal, db: DbSession, ledger: Ledger
):
    collaboration, result = await settlement_service.complete_collaboration(
        db, ledger, principal.account_id, collaboration_id, is_admin=principal.is_admin
    )
    return CollaborationCompleteResponse(
        collaboration=CollaborationResponse.model_validate(collaboration),
        settlement=LedgerResultResponse.from_result(result) if result else None,
    )


# ── Territories ───────────────────────────────────────────────────────────────


@router.post("/territories/claim", response_model=ClaimTerritoryResponse)
async def claim_territory(
    body: ClaimTerritoryRequest, principal: CurrentPrincipal, db: DbSession, ledger: Ledger
):
    if principal.role != "agent":
        raise ForbiddenError("Only agents can claim territories")
    territory, result = await settlement_service.claim_territory(
        db, ledger, principal.account_id, body.area, body.state, body.cost, body.attempt_id
    )
    return ClaimTerritoryResponse(
        territory=TerritoryResponse.model_validate(territory),
        new_balance=result.from_balance,
        settlement=LedgerResultResponse.from_result(result),
    )
