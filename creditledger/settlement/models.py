import enum
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from creditledger.db.base import Base, TimestampMixin, UpdatedAtMixin, UUIDMixin


def _values(e: type[enum.Enum]) -> list[str]:
    return [m.value for m in e]


class OfferStatus(str, enum.Enum):
    ACTIVE = "active"
    RESERVED = "reserved"   # a purchase is settling
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CollaborationStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TerritoryStatus(str, enum.Enum):
    CLAIMING = "claiming"   # placeholder while the claim fee is debited
    ACTIVE = "active"


class CreditBundle(TimestampMixin, Base):
    __tablename__ = "credit_bundles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bonus_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # Minor currency units (kobo)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    popular: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class MarketplaceOffer(TimestampMixin, UpdatedAtMixin, Base):
    __tablename__ = "marketplace_offers"
    __table_args__ = (
        Index("ix_offers_agent_status", "agent_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # co-broking | collaboration | lead | contact
    offer_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    property_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    credit_cost: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[OfferStatus] = mapped_column(
        Enum(OfferStatus, values_callable=_values), nullable=False, default=OfferStatus.ACTIVE
    )
    purchased_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Collaboration(UUIDMixin, TimestampMixin, UpdatedAtMixin, Base):
    __tablename__ = "collaborations"

    offer_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    collaboration_type: Mapped[str] = mapped_column(String(32), nullable=False)
    # from_agent pays to_agent when the collaboration completes
    from_agent_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    to_agent_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    property_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[CollaborationStatus] = mapped_column(
        Enum(CollaborationStatus, values_callable=_values),
        nullable=False,
        default=CollaborationStatus.PENDING,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Territory(UUIDMixin, TimestampMixin, UpdatedAtMixin, Base):
    __tablename__ = "territories"
    __table_args__ = (
        UniqueConstraint("agent_id", "area", name="uq_territory_agent_area"),
    )

    agent_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    area: Mapped[str] = mapped_column(String(128), nullable=False)
    state: Mapped[str] = mapped_column(String(64), nullable=False, default="Lagos")
    cost: Mapped[int] = mapped_column(BigInteger, nullable=False)
    claim_attempt_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    status: Mapped[TerritoryStatus] = mapped_column(
        Enum(TerritoryStatus, values_callable=_values),
        nullable=False,
        default=TerritoryStatus.CLAIMING,
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
