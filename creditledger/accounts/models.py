from sqlalchemy import BigInteger, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from creditledger.db.base import Base, TimestampMixin, UpdatedAtMixin


class Account(TimestampMixin, UpdatedAtMixin, Base):
    """Current balances of one actor. Mutated only through compare-and-swap."""
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_accounts_credit_non_negative"),
        CheckConstraint("wallet_balance >= 0", name="ck_accounts_wallet_non_negative"),
    )

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    credit_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # Minor currency units (kobo); independent of credits
    wallet_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # Balances the account was opened with — the baseline for conservation audits
    opening_credit_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    opening_wallet_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
