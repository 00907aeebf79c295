from decimal import Decimal
from sqlalchemy import Column, Integer, String, Numeric, DateTime, UniqueConstraint, CheckConstraint
from sqlalchemy.sql import func
from custody.database import Base


class LedgerEntryType:
    credit = "credit"
    lock = "lock"
    unlock = "unlock"
    debit = "debit"
    settle_out = "settle_out"
    settle_in = "settle_in"


class Balance(Base):
    __tablename__ = "balances"
    __table_args__ = (
        UniqueConstraint("user_id", "asset", name="uq_balance_user_asset"),
        CheckConstraint("available >= 0", name="ck_balance_available_non_negative"),
        CheckConstraint("locked >= 0", name="ck_balance_locked_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False)
    asset = Column(String(20), nullable=False)
    available = Column(Numeric(36, 18), nullable=False, default=Decimal("0"))
    locked = Column(Numeric(36, 18), nullable=False, default=Decimal("0"))
    # Optimistic concurrency token, bumped on every write
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("entry_type", "reference_id", name="uq_ledger_entry_type_reference"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    asset = Column(String(20), nullable=False)
    entry_type = Column(String(20), nullable=False)
    amount = Column(Numeric(36, 18), nullable=False)
    available_after = Column(Numeric(36, 18), nullable=False)
    locked_after = Column(Numeric(36, 18), nullable=False)
    reference_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
