"""Settlement adapters against the SQL ledger and business tables."""
import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from creditledger.core.exceptions import (
    AppError,
    DuplicateInProgressError,
    ForbiddenError,
    InsufficientFundsError,
    InvalidOperationError,
    NotFoundError,
    StoreUnavailableError,
)
from creditledger.ledger.reconciliation import SweepOutcome, sweep_stale_pending
from creditledger.settlement import service as settlement_service
from creditledger.settlement.models import (
    Collaboration,
    CollaborationStatus,
    CreditBundle,
    MarketplaceOffer,
    OfferStatus,
    Territory,
    TerritoryStatus,
)
from creditledger.transactions.models import TransactionKind, TransactionStatus


async def add_offer(db, offer_type: str = "lead", credit_cost: int = 30) -> MarketplaceOffer:
    offer = MarketplaceOffer(
        id=f"offer-{uuid.uuid4().hex[:8]}",
        agent_id="seller",
        offer_type=offer_type,
        title="3 bed flat, Lekki",
        property_id="prop-1",
        credit_cost=credit_cost,
        status=OfferStatus.ACTIVE,
    )
    db.add(offer)
    await db.commit()
    return offer


# ── Bundles and payments ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_default_bundles_served_when_catalogue_empty(db):
    bundles = await settlement_service.list_bundles(db)
    assert [b.id for b in bundles] == ["bundle-1", "bundle-2", "bundle-3", "bundle-4"]


@pytest.mark.asyncio
async def test_purchase_default_bundle_includes_bonus(db, sql_ledger):
    await sql_ledger.accounts.create("buyer")

    bundle, result = await settlement_service.purchase_bundle(db, sql_ledger, "buyer", "bundle-2", "ps_ref_1")

    assert bundle.name == "Popular Choice"
    assert result.to_balance == 30
    assert result.transaction.metadata == {"bundle_id": "bundle-2", "price": 2000, "bonus_credits": 5}


@pytest.mark.asyncio
async def test_redelivered_payment_credits_once(db, sql_ledger):
    await sql_ledger.accounts.create("buyer")

    await settlement_service.purchase_bundle(db, sql_ledger, "buyer", "bundle-1", "ps_ref_1")
    _, replay = await settlement_service.purchase_bundle(db, sql_ledger, "buyer", "bundle-1", "ps_ref_1")

    assert replay.replayed is True
    assert (await sql_ledger.get_balance("buyer")).credit_balance == 10


@pytest.mark.asyncio
async def test_catalogue_bundle_used_and_inactive_rejected(db, sql_ledger):
    await sql_ledger.accounts.create("buyer")
    db.add(CreditBundle(id="promo", name="Promo", credits=7, bonus_credits=1, price=500, active=True))
    db.add(CreditBundle(id="retired", name="Retired", credits=7, bonus_credits=0, price=500, active=False))
    await db.commit()

    _, result = await settlement_service.purchase_bundle(db, sql_ledger, "buyer", "promo", "ps_ref_1")
    assert result.to_balance == 8

    with pytest.raises(AppError) as exc_info:
        await settlement_service.purchase_bundle(db, sql_ledger, "buyer", "retired", "ps_ref_2")
    assert exc_info.value.status_code == 400

    # Once a catalogue exists the defaults are no longer served.
    with pytest.raises(AppError):
        await settlement_service.purchase_bundle(db, sql_ledger, "buyer", "bundle-1", "ps_ref_3")
    assert [b.id for b in await settlement_service.list_bundles(db)] == ["promo"]


@pytest.mark.asyncio
async def test_verify_payment_by_reference(db, sql_ledger):
    await sql_ledger.accounts.create("buyer", wallet_balance=900)
    await sql_ledger.accounts.create("other")
    await settlement_service.purchase_bundle(db, sql_ledger, "buyer", "bundle-1", "ps_ref_1")

    tx, account = await settlement_service.verify_payment(sql_ledger, "buyer", "ps_ref_1")
    assert tx.status == TransactionStatus.COMPLETED
    assert tx.amount == 10
    assert (account.credit_balance, account.wallet_balance) == (10, 900)

    with pytest.raises(NotFoundError):
        await settlement_service.verify_payment(sql_ledger, "other", "ps_ref_1")
    with pytest.raises(NotFoundError):
        await settlement_service.verify_payment(sql_ledger, "buyer", "ps_ref_unknown")


@pytest.mark.asyncio
async def test_load_wallet(sql_ledger):
    await sql_ledger.accounts.create("agent", credit_balance=3)

    result = await settlement_service.load_wallet(sql_ledger, "agent", 250000, "ps_wallet_1")
    replay = await settlement_service.load_wallet(sql_ledger, "agent", 250000, "ps_wallet_1")

    assert result.transaction.kind == TransactionKind.WALLET_LOAD
    assert replay.replayed is True
    account = await sql_ledger.get_balance("agent")
    assert (account.credit_balance, account.wallet_balance) == (3, 250000)


# ── Marketplace offers ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_offer_purchase_pays_seller(db, sql_ledger):
    await sql_ledger.accounts.create("buyer", credit_balance=100)
    await sql_ledger.accounts.create("seller")
    offer = await add_offer(db)

    sold, collaboration, result = await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)

    assert sold.status == OfferStatus.COMPLETED
    assert sold.purchased_by == "buyer"
    assert sold.purchased_at is not None
    assert collaboration is None
    assert (result.from_balance, result.to_balance) == (70, 30)
    assert result.transaction.idempotency_key == f"{offer.id}:buyer"


@pytest.mark.asyncio
async def test_offer_purchase_repeat_replays(db, sql_ledger):
    await sql_ledger.accounts.create("buyer", credit_balance=100)
    await sql_ledger.accounts.create("seller")
    offer = await add_offer(db)

    await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)
    _, _, replay = await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)

    assert replay.replayed is True
    assert (await sql_ledger.get_balance("buyer")).credit_balance == 70
    assert (await sql_ledger.get_balance("seller")).credit_balance == 30


@pytest.mark.asyncio
async def test_offer_released_when_buyer_cannot_pay(db, sql_ledger):
    await sql_ledger.accounts.create("buyer", credit_balance=10)
    await sql_ledger.accounts.create("seller")
    offer = await add_offer(db)

    with pytest.raises(InsufficientFundsError):
        await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)

    await db.refresh(offer)
    assert offer.status == OfferStatus.ACTIVE
    assert offer.purchased_by is None
    assert (await sql_ledger.get_balance("buyer")).credit_balance == 10


@pytest.mark.asyncio
async def test_sold_offer_unavailable_to_others(db, sql_ledger):
    await sql_ledger.accounts.create("buyer", credit_balance=100)
    await sql_ledger.accounts.create("late", credit_balance=100)
    await sql_ledger.accounts.create("seller")
    offer = await add_offer(db)
    await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)

    with pytest.raises(AppError) as exc_info:
        await settlement_service.purchase_offer(db, sql_ledger, "late", offer.id)
    assert exc_info.value.status_code == 409
    assert (await sql_ledger.get_balance("late")).credit_balance == 100


@pytest.mark.asyncio
async def test_own_offer_and_missing_offer_rejected(db, sql_ledger):
    await sql_ledger.accounts.create("seller", credit_balance=100)
    offer = await add_offer(db)

    with pytest.raises(AppError) as exc_info:
        await settlement_service.purchase_offer(db, sql_ledger, "seller", offer.id)
    assert exc_info.value.status_code == 400
    with pytest.raises(NotFoundError):
        await settlement_service.purchase_offer(db, sql_ledger, "seller", "offer-missing")


@pytest.mark.asyncio
async def test_co_broking_offer_opens_prepaid_collaboration(db, sql_ledger):
    await sql_ledger.accounts.create("buyer", credit_balance=100)
    await sql_ledger.accounts.create("seller")
    offer = await add_offer(db, offer_type="co-broking", credit_cost=40)

    _, collaboration, _ = await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)

    assert collaboration.status == CollaborationStatus.ACTIVE
    assert (collaboration.from_agent_id, collaboration.to_agent_id) == ("seller", "buyer")
    assert collaboration.credits == 0

    completed, settlement = await settlement_service.complete_collaboration(
        db, sql_ledger, "buyer", collaboration.id
    )
    assert completed.status == CollaborationStatus.COMPLETED
    assert settlement is None
    assert (await sql_ledger.get_balance("buyer")).credit_balance == 60


# ── Collaborations ────────────────────────────────────────────────────────────


async def add_collaboration(db, credits: int = 25) -> Collaboration:
    collaboration = Collaboration(
        collaboration_type="referral",
        from_agent_id="agent-a",
        to_agent_id="agent-b",
        credits=credits,
        status=CollaborationStatus.PENDING,
    )
    db.add(collaboration)
    await db.commit()
    return collaboration


@pytest.mark.asyncio
async def test_collaboration_completion_settles_once(db, sql_ledger):
    await sql_ledger.accounts.create("agent-a", credit_balance=40)
    await sql_ledger.accounts.create("agent-b")
    collaboration = await add_collaboration(db)

    completed, result = await settlement_service.complete_collaboration(
        db, sql_ledger, "agent-b", collaboration.id
    )
    assert completed.status == CollaborationStatus.COMPLETED
    assert completed.completed_at is not None
    assert (result.from_balance, result.to_balance) == (15, 25)

    _, replay = await settlement_service.complete_collaboration(db, sql_ledger, "agent-a", collaboration.id)
    assert replay.replayed is True
    assert (await sql_ledger.get_balance("agent-a")).credit_balance == 15


@pytest.mark.asyncio
async def test_collaboration_outsider_forbidden_admin_allowed(db, sql_ledger):
    await sql_ledger.accounts.create("agent-a", credit_balance=40)
    await sql_ledger.accounts.create("agent-b")
    collaboration = await add_collaboration(db)

    with pytest.raises(ForbiddenError):
        await settlement_service.complete_collaboration(db, sql_ledger, "stranger", collaboration.id)

    completed, _ = await settlement_service.complete_collaboration(
        db, sql_ledger, "ops", collaboration.id, is_admin=True
    )
    assert completed.status == CollaborationStatus.COMPLETED


@pytest.mark.asyncio
async def test_collaboration_stays_open_when_payer_short(db, sql_ledger):
    await sql_ledger.accounts.create("agent-a", credit_balance=5)
    await sql_ledger.accounts.create("agent-b")
    collaboration = await add_collaboration(db)

    with pytest.raises(InsufficientFundsError):
        await settlement_service.complete_collaboration(db, sql_ledger, "agent-a", collaboration.id)

    await db.refresh(collaboration)
    assert collaboration.status == CollaborationStatus.PENDING


@pytest.mark.asyncio
async def test_cancelled_or_missing_collaboration(db, sql_ledger):
    collaboration = await add_collaboration(db)
    collaboration.status = CollaborationStatus.CANCELLED
    await db.commit()

    with pytest.raises(AppError) as exc_info:
        await settlement_service.complete_collaboration(db, sql_ledger, "agent-a", collaboration.id)
    assert exc_info.value.status_code == 409
    with pytest.raises(NotFoundError):
        await settlement_service.complete_collaboration(db, sql_ledger, "agent-a", uuid.uuid4())


# ── Territories ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_claim_territory(db, sql_ledger):
    await sql_ledger.accounts.create("agent", credit_balance=100)
    attempt = uuid.uuid4()

    territory, result = await settlement_service.claim_territory(
        db, sql_ledger, "agent", "Lekki Phase 1", "Lagos", 60, attempt
    )

    assert territory.status == TerritoryStatus.ACTIVE
    assert territory.claimed_at is not None
    assert result.from_balance == 40
    assert result.transaction.idempotency_key == str(attempt)
    assert result.transaction.metadata["area"] == "Lekki Phase 1"
    assert set(Territory.__table__.columns.keys()) == {
        "id", "agent_id", "area", "state", "cost", "claim_attempt_id",
        "status", "claimed_at", "created_at", "updated_at",
    }


@pytest.mark.asyncio
async def test_claim_retry_replays(db, sql_ledger):
    await sql_ledger.accounts.create("agent", credit_balance=100)
    attempt = uuid.uuid4()

    first, _ = await settlement_service.claim_territory(db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, attempt)
    again, replay = await settlement_service.claim_territory(db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, attempt)

    assert again.id == first.id
    assert replay.replayed is True
    assert (await sql_ledger.get_balance("agent")).credit_balance == 40


@pytest.mark.asyncio
async def test_claim_owned_area_rejected(db, sql_ledger):
    await sql_ledger.accounts.create("agent", credit_balance=200)
    await settlement_service.claim_territory(db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, uuid.uuid4())

    with pytest.raises(AppError) as exc_info:
        await settlement_service.claim_territory(db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, uuid.uuid4())
    assert exc_info.value.status_code == 409
    assert (await sql_ledger.get_balance("agent")).credit_balance == 140


@pytest.mark.asyncio
async def test_claim_without_credits_leaves_no_territory(db, sql_ledger):
    await sql_ledger.accounts.create("agent", credit_balance=10)

    with pytest.raises(InsufficientFundsError):
        await settlement_service.claim_territory(db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, uuid.uuid4())

    result = await db.execute(select(Territory).where(Territory.agent_id == "agent"))
    assert result.scalars().all() == []


# ── Rewards ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_reward_paid_once_per_source(sql_ledger):
    await sql_ledger.accounts.create("agent")

    await settlement_service.award_reward(sql_ledger, "agent", 15, "quest", "weekly-3")
    replay = await settlement_service.award_reward(sql_ledger, "agent", 15, "quest", "weekly-3")
    await settlement_service.award_reward(sql_ledger, "agent", 5, "badge", "first-sale")

    assert replay.replayed is True
    assert replay.transaction.kind == TransactionKind.CREDIT_REWARD
    assert (await sql_ledger.get_balance("agent")).credit_balance == 20


@pytest.mark.asyncio
async def test_reward_unknown_source(sql_ledger):
    await sql_ledger.accounts.create("agent")
    with pytest.raises(InvalidOperationError):
        await settlement_service.award_reward(sql_ledger, "agent", 15, "lottery", "x")


# ── Interrupted settlements ───────────────────────────────────────────────────


def interrupt_once(monkeypatch, target, name, exc, when=lambda *args: True):
    """The next matching call of `target.name` raises `exc`; later calls run normally."""
    original = getattr(target, name)
    armed = [True]

    async def interrupted(*args, **kwargs):
        if armed[0] and when(*args):
            armed[0] = False
            raise exc
        return await original(*args, **kwargs)

    monkeypatch.setattr(target, name, interrupted)


def on_completion(transaction_id, status):
    return status == TransactionStatus.COMPLETED


@pytest.mark.asyncio
async def test_offer_stays_reserved_when_completion_not_recorded(monkeypatch, db, sql_ledger):
    await sql_ledger.accounts.create("buyer", credit_balance=100)
    await sql_ledger.accounts.create("other", credit_balance=100)
    await sql_ledger.accounts.create("seller")
    offer = await add_offer(db)
    interrupt_once(
        monkeypatch, sql_ledger.transactions, "finalize",
        StoreUnavailableError("Transaction log unavailable"), when=on_completion,
    )

    with pytest.raises(StoreUnavailableError):
        await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)

    await db.refresh(offer)
    assert offer.status == OfferStatus.RESERVED
    assert offer.purchased_by == "buyer"

    with pytest.raises(AppError) as exc_info:
        await settlement_service.purchase_offer(db, sql_ledger, "other", offer.id)
    assert exc_info.value.status_code == 409
    with pytest.raises(DuplicateInProgressError):
        await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)

    report = await sweep_stale_pending(sql_ledger, timedelta(0))
    assert report.count(SweepOutcome.COMPLETED) == 1

    sold, _, result = await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)
    assert sold.status == OfferStatus.COMPLETED
    assert sold.purchased_by == "buyer"
    assert result.replayed is True
    assert (await sql_ledger.get_balance("buyer")).credit_balance == 70
    assert (await sql_ledger.get_balance("other")).credit_balance == 100
    assert (await sql_ledger.get_balance("seller")).credit_balance == 30


@pytest.mark.asyncio
async def test_cancelled_offer_purchase_resumes_after_sweep(monkeypatch, db, sql_ledger):
    await sql_ledger.accounts.create("buyer", credit_balance=100)
    await sql_ledger.accounts.create("seller")
    offer = await add_offer(db, offer_type="co-broking")
    interrupt_once(
        monkeypatch, sql_ledger.transactions, "finalize", asyncio.CancelledError(), when=on_completion
    )

    with pytest.raises(asyncio.CancelledError):
        await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)

    await sweep_stale_pending(sql_ledger, timedelta(0))

    sold, collaboration, _ = await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)
    assert sold.status == OfferStatus.COMPLETED
    assert collaboration.status == CollaborationStatus.ACTIVE

    _, again, _ = await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)
    assert again.id == collaboration.id
    assert (await sql_ledger.get_balance("buyer")).credit_balance == 70
    assert (await sql_ledger.get_balance("seller")).credit_balance == 30


@pytest.mark.asyncio
async def test_offer_purchase_cancelled_before_any_leg(monkeypatch, db, sql_ledger):
    await sql_ledger.accounts.create("buyer", credit_balance=100)
    await sql_ledger.accounts.create("seller")
    offer = await add_offer(db)
    interrupt_once(monkeypatch, sql_ledger.accounts, "compare_and_swap", asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)

    report = await sweep_stale_pending(sql_ledger, timedelta(0))
    assert report.count(SweepOutcome.ABANDONED) == 1

    sold, _, result = await settlement_service.purchase_offer(db, sql_ledger, "buyer", offer.id)
    assert sold.status == OfferStatus.COMPLETED
    assert result.replayed is False
    assert (await sql_ledger.get_balance("buyer")).credit_balance == 70
    assert (await sql_ledger.get_balance("seller")).credit_balance == 30


@pytest.mark.asyncio
async def test_cancelled_claim_completes_on_retry(monkeypatch, db, sql_ledger):
    await sql_ledger.accounts.create("agent", credit_balance=100)
    attempt = uuid.uuid4()
    interrupt_once(
        monkeypatch, sql_ledger.transactions, "finalize", asyncio.CancelledError(), when=on_completion
    )

    with pytest.raises(asyncio.CancelledError):
        await settlement_service.claim_territory(db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, attempt)

    with pytest.raises(AppError) as exc_info:
        await settlement_service.claim_territory(db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, uuid.uuid4())
    assert exc_info.value.status_code == 409
    with pytest.raises(DuplicateInProgressError):
        await settlement_service.claim_territory(db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, attempt)

    report = await sweep_stale_pending(sql_ledger, timedelta(0))
    assert report.count(SweepOutcome.COMPLETED) == 1

    territory, result = await settlement_service.claim_territory(
        db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, attempt
    )
    assert territory.status == TerritoryStatus.ACTIVE
    assert territory.claimed_at is not None
    assert result.replayed is True
    assert (await sql_ledger.get_balance("agent")).credit_balance == 40


@pytest.mark.asyncio
async def test_claim_kept_through_store_outage(monkeypatch, db, sql_ledger):
    await sql_ledger.accounts.create("agent", credit_balance=100)
    attempt = uuid.uuid4()
    interrupt_once(
        monkeypatch, sql_ledger.accounts, "compare_and_swap",
        StoreUnavailableError("Account store unavailable"),
    )

    with pytest.raises(StoreUnavailableError):
        await settlement_service.claim_territory(db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, attempt)

    result = await db.execute(select(Territory).where(Territory.agent_id == "agent"))
    assert [t.status for t in result.scalars().all()] == [TerritoryStatus.CLAIMING]

    report = await sweep_stale_pending(sql_ledger, timedelta(0))
    assert report.results == []

    territory, settled = await settlement_service.claim_territory(
        db, sql_ledger, "agent", "Ikoyi", "Lagos", 60, attempt
    )
    assert territory.status == TerritoryStatus.ACTIVE
    assert settled.replayed is False
    assert (await sql_ledger.get_balance("agent")).credit_balance == 40


@pytest.mark.asyncio
async def test_collaboration_settles_after_interrupted_completion(monkeypatch, db, sql_ledger):
    await sql_ledger.accounts.create("agent-a", credit_balance=40)
    await sql_ledger.accounts.create("agent-b")
    collaboration = await add_collaboration(db)
    interrupt_once(
        monkeypatch, sql_ledger.transactions, "finalize",
        StoreUnavailableError("Transaction log unavailable"), when=on_completion,
    )

    with pytest.raises(StoreUnavailableError):
        await settlement_service.complete_collaboration(db, sql_ledger, "agent-b", collaboration.id)

    await db.refresh(collaboration)
    assert collaboration.status == CollaborationStatus.PENDING
    with pytest.raises(DuplicateInProgressError):
        await settlement_service.complete_collaboration(db, sql_ledger, "agent-b", collaboration.id)

    await sweep_stale_pending(sql_ledger, timedelta(0))

    completed, result = await settlement_service.complete_collaboration(
        db, sql_ledger, "agent-b", collaboration.id
    )
    assert completed.status == CollaborationStatus.COMPLETED
    assert result.replayed is True
    assert (await sql_ledger.get_balance("agent-a")).credit_balance == 15
    assert (await sql_ledger.get_balance("agent-b")).credit_balance == 25
