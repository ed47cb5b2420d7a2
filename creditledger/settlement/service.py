"""
Settlement adapters — translate one business event into one ledger call.

Each adapter validates the business object and calls the engine once with
a deterministic idempotency key. Business state is committed before and
after that call, never held open across it. Balances are never touched here.
"""
import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from creditledger.accounts.schemas import AccountSnapshot
from creditledger.config import settings
from creditledger.core.exceptions import (
    AppError,
    DuplicateInProgressError,
    ForbiddenError,
    InvalidOperationError,
    LedgerError,
    NotFoundError,
)
from creditledger.db.base import utcnow
from creditledger.ledger.engine import LedgerEngine, LedgerResult
from creditledger.settlement.models import (
    Collaboration,
    CollaborationStatus,
    CreditBundle,
    MarketplaceOffer,
    OfferStatus,
    Territory,
    TerritoryStatus,
)
from creditledger.transactions.models import TransactionKind
from creditledger.transactions.schemas import TransactionRecord

logger = logging.getLogger(__name__)

# Served when the bundle table is empty (fresh deployments).
DEFAULT_BUNDLES = [
    {"id": "bundle-1", "name": "Starter Pack", "credits": 10, "bonus_credits": 0, "price": 1000, "popular": False},
    {"id": "bundle-2", "name": "Popular Choice", "credits": 25, "bonus_credits": 5, "price": 2000, "popular": True},
    {"id": "bundle-3", "name": "Value Pack", "credits": 50, "bonus_credits": 10, "price": 3500, "popular": False},
    {"id": "bundle-4", "name": "Premium Bundle", "credits": 100, "bonus_credits": 25, "price": 6000, "popular": True},
]

# Offer types that open a collaboration between seller and buyer.
COLLABORATIVE_OFFER_TYPES = ("co-broking", "collaboration")

REWARD_SOURCES = ("quest", "challenge", "badge")


# ── Credit bundles ────────────────────────────────────────────────────────────


def _default_bundles() -> list[CreditBundle]:
    return [CreditBundle(active=True, **b) for b in DEFAULT_BUNDLES]


async def list_bundles(db: AsyncSession) -> list[CreditBundle]:
    result = await db.execute(
        select(CreditBundle).where(CreditBundle.active.is_(True)).order_by(CreditBundle.price)
    )
    bundles = list(result.scalars().all())
    return bundles or _default_bundles()


async def get_bundle(db: AsyncSession, bundle_id: str) -> CreditBundle | None:
    bundle = await db.get(CreditBundle, bundle_id)
    if bundle is not None:
        return bundle
    result = await db.execute(select(CreditBundle.id).limit(1))
    if result.first() is None:
        return next((b for b in _default_bundles() if b.id == bundle_id), None)
    return None


async def purchase_bundle(
    db: AsyncSession,
    ledger: LedgerEngine,
    account_id: str,
    bundle_id: str,
    payment_reference: str,
) -> tuple[CreditBundle, LedgerResult]:
    """Credit a paid bundle. The gateway reference makes a re-delivered callback a no-op."""
    bundle = await get_bundle(db, bundle_id)
    if bundle is None or not bundle.active:
        raise AppError("Invalid or inactive bundle", status_code=400)

    total_credits = bundle.credits + (bundle.bonus_credits or 0)
    result = await ledger.credit(
        account_id,
        total_credits,
        TransactionKind.CREDIT_PURCHASE,
        idempotency_key=payment_reference,
        metadata={
            "bundle_id": bundle.id,
            "price": bundle.price,
            "bonus_credits": bundle.bonus_credits or 0,
        },
    )
    return bundle, result


async def verify_payment(
    ledger: LedgerEngine, account_id: str, reference: str
) -> tuple[TransactionRecord, AccountSnapshot]:
    tx = await ledger.transactions.find_by_idempotency_key(reference, TransactionKind.CREDIT_PURCHASE)
    if tx is None or tx.to_account_id != account_id:
        raise NotFoundError("Payment", reference)
    return tx, await ledger.get_balance(account_id)


def payment_gateway_configured() -> bool:
    return bool(settings.paystack_public_key)


# ── Wallet ────────────────────────────────────────────────────────────────────


async def load_wallet(
    ledger: LedgerEngine, account_id: str, amount: int, payment_reference: str
) -> LedgerResult:
    return await ledger.credit(
        account_id,
        amount,
        TransactionKind.WALLET_LOAD,
        idempotency_key=payment_reference,
        metadata={"payment_reference": payment_reference},
    )


# ── Marketplace ───────────────────────────────────────────────────────────────


def offer_idempotency_key(offer_id: str, buyer_id: str) -> str:
    return f"{offer_id}:{buyer_id}"


async def _offer_collaboration(db: AsyncSession, offer_id: str) -> Collaboration | None:
    result = await db.execute(select(Collaboration).where(Collaboration.offer_id == offer_id))
    return result.scalar_one_or_none()


async def _release_offer(db: AsyncSession, offer_id: str, buyer_id: str) -> None:
    await db.execute(
        update(MarketplaceOffer)
        .where(
            MarketplaceOffer.id == offer_id,
            MarketplaceOffer.status == OfferStatus.RESERVED,
            MarketplaceOffer.purchased_by == buyer_id,
        )
        .values(status=OfferStatus.ACTIVE, purchased_by=None)
    )
    await db.commit()


def _releases_reservation(exc: LedgerError) -> bool:
    # Retryable errors can follow legs that already landed.
    return not exc.retryable and not isinstance(exc, DuplicateInProgressError)


async def _settle_offer(
    db: AsyncSession, ledger: LedgerEngine, offer: MarketplaceOffer, buyer_id: str
) -> tuple[MarketplaceOffer, Collaboration | None, LedgerResult]:
    try:
        result = await ledger.transfer(
            buyer_id,
            offer.agent_id,
            offer.credit_cost,
            TransactionKind.CREDIT_TRANSFER,
            idempotency_key=offer_idempotency_key(offer.id, buyer_id),
            metadata={"offer_id": offer.id, "offer_type": offer.offer_type},
        )
    except LedgerError as exc:
        if _releases_reservation(exc):
            await _release_offer(db, offer.id, buyer_id)
        raise

    completed = await db.execute(
        update(MarketplaceOffer)
        .where(
            MarketplaceOffer.id == offer.id,
            MarketplaceOffer.status == OfferStatus.RESERVED,
            MarketplaceOffer.purchased_by == buyer_id,
        )
        .values(status=OfferStatus.COMPLETED, purchased_at=utcnow())
    )
    if completed.rowcount == 1 and offer.offer_type in COLLABORATIVE_OFFER_TYPES:
        # Paid for by the purchase itself; completing it moves no further credits.
        db.add(
            Collaboration(
                offer_id=offer.id,
                collaboration_type=offer.offer_type,
                from_agent_id=offer.agent_id,
                to_agent_id=buyer_id,
                property_id=offer.property_id,
                credits=0,
                status=CollaborationStatus.ACTIVE,
            )
        )
    await db.commit()
    await db.refresh(offer)
    if completed.rowcount == 1:
        logger.info("Offer %s sold to %s for %d credits", offer.id, buyer_id, offer.credit_cost)
    return offer, await _offer_collaboration(db, offer.id), result


async def purchase_offer(
    db: AsyncSession, ledger: LedgerEngine, buyer_id: str, offer_id: str
) -> tuple[MarketplaceOffer, Collaboration | None, LedgerResult]:
    """
    Buy a marketplace offer: buyer pays the offering agent its credit cost.

    The offer is reserved for the buyer before the transfer so two buyers
    can never both pay for it. It turns `completed` once the transfer has
    completed and goes back to `active` only when the ledger rejected the
    transfer outright. After an infrastructure error or a dropped request
    the reservation stays, and the same buyer calling again resumes it.
    """
    offer = await db.get(MarketplaceOffer, offer_id)
    if offer is None:
        raise NotFoundError("Offer", offer_id)
    if offer.agent_id == buyer_id:
        raise AppError("You cannot purchase your own offer", status_code=400)

    held_by_buyer = offer.purchased_by == buyer_id and offer.status in (
        OfferStatus.RESERVED,
        OfferStatus.COMPLETED,
    )
    if held_by_buyer:
        return await _settle_offer(db, ledger, offer, buyer_id)
    if offer.status != OfferStatus.ACTIVE:
        raise AppError("This offer is no longer available", status_code=409)

    reserved = await db.execute(
        update(MarketplaceOffer)
        .where(MarketplaceOffer.id == offer_id, MarketplaceOffer.status == OfferStatus.ACTIVE)
        .values(status=OfferStatus.RESERVED, purchased_by=buyer_id)
    )
    await db.commit()
    if reserved.rowcount != 1:
        raise AppError("This offer is no longer available", status_code=409)
    await db.refresh(offer)
    return await _settle_offer(db, ledger, offer, buyer_id)


async def complete_collaboration(
    db: AsyncSession,
    ledger: LedgerEngine,
    actor_id: str,
    collaboration_id: uuid.UUID,
    is_admin: bool = False,
) -> tuple[Collaboration, LedgerResult | None]:
    """Settle a collaboration: from_agent pays to_agent its agreed credits."""
    collaboration = await db.get(Collaboration, collaboration_id)
    if collaboration is None:
        raise NotFoundError("Collaboration", str(collaboration_id))

    participants = (collaboration.from_agent_id, collaboration.to_agent_id)
    if actor_id not in participants and not is_admin:
        raise ForbiddenError("Unauthorized to update this collaboration")
    if collaboration.status == CollaborationStatus.CANCELLED:
        raise AppError("Collaboration was cancelled", status_code=409)

    result = None
    if collaboration.credits > 0:
        result = await ledger.transfer(
            collaboration.from_agent_id,
            collaboration.to_agent_id,
            collaboration.credits,
            TransactionKind.CREDIT_TRANSFER,
            idempotency_key=str(collaboration.id),
            metadata={"collaboration_id": str(collaboration.id)},
        )

    if collaboration.status != CollaborationStatus.COMPLETED:
        await db.execute(
            update(Collaboration)
            .where(
                Collaboration.id == collaboration_id,
                Collaboration.status.in_([CollaborationStatus.PENDING, CollaborationStatus.ACTIVE]),
            )
            .values(status=CollaborationStatus.COMPLETED, completed_at=utcnow())
        )
        await db.commit()
        await db.refresh(collaboration)
    return collaboration, result


# ── Territories ───────────────────────────────────────────────────────────────


async def _settle_claim(
    db: AsyncSession, ledger: LedgerEngine, territory: Territory
) -> tuple[Territory, LedgerResult]:
    try:
        settled = await ledger.debit(
            territory.agent_id,
            territory.cost,
            TransactionKind.CREDIT_SPEND,
            idempotency_key=str(territory.claim_attempt_id),
            metadata={"area": territory.area, "state": territory.state, "territory_id": str(territory.id)},
        )
    except LedgerError as exc:
        if _releases_reservation(exc):
            await db.delete(territory)
            await db.commit()
        raise

    if territory.status == TerritoryStatus.CLAIMING:
        territory.status = TerritoryStatus.ACTIVE
        territory.claimed_at = utcnow()
        await db.commit()
        logger.info("Agent %s claimed %s for %d credits", territory.agent_id, territory.area, territory.cost)
    return territory, settled


async def claim_territory(
    db: AsyncSession,
    ledger: LedgerEngine,
    agent_id: str,
    area: str,
    state: str,
    cost: int,
    attempt_id: uuid.UUID,
) -> tuple[Territory, LedgerResult]:
    """
    Claim an area for an agent by spending `cost` credits.

    A `claiming` row is inserted first so the (agent, area) uniqueness
    constraint rejects a parallel claim before any credits move. Calling
    again with the same attempt id resumes a claim left `claiming` and
    replays one already settled.
    """
    result = await db.execute(
        select(Territory).where(Territory.agent_id == agent_id, Territory.area == area)
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        if existing.claim_attempt_id == attempt_id:
            return await _settle_claim(db, ledger, existing)
        if existing.status == TerritoryStatus.CLAIMING:
            raise AppError("A claim for this territory is already in progress", status_code=409)
        raise AppError("You already own this territory", status_code=409)

    territory = Territory(
        agent_id=agent_id,
        area=area,
        state=state,
        cost=cost,
        claim_attempt_id=attempt_id,
        status=TerritoryStatus.CLAIMING,
    )
    db.add(territory)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AppError("Territory already claimed or claim attempt reused", status_code=409)

    return await _settle_claim(db, ledger, territory)


# ── Gamification rewards ──────────────────────────────────────────────────────


async def award_reward(
    ledger: LedgerEngine, account_id: str, credits: int, source: str, source_id: str
) -> LedgerResult:
    """Pay out a quest/challenge/badge reward at most once per (source, account)."""
    if source not in REWARD_SOURCES:
        raise InvalidOperationError(f"Unknown reward source: {source}")
    return await ledger.credit(
        account_id,
        credits,
        TransactionKind.CREDIT_REWARD,
        idempotency_key=f"{source}:{source_id}:{account_id}",
        metadata={"source": source, "source_id": source_id},
    )
