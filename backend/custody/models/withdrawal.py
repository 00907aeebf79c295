from sqlalchemy import Column, Integer, String, Numeric, DateTime, Index
from sqlalchemy.sql import func
from custody.database import Base


class WithdrawalStatus:
    pending = "pending"
    processing = "processing"
    broadcasted = "broadcasted"
    confirmed = "confirmed"
    failed = "failed"
    cancelled = "cancelled"


# Allowed lifecycle moves; anything else is an InvalidState
WITHDRAWAL_TRANSITIONS = {
    WithdrawalStatus.pending: {WithdrawalStatus.processing, WithdrawalStatus.cancelled},
    WithdrawalStatus.processing: {WithdrawalStatus.broadcasted, WithdrawalStatus.failed},
    WithdrawalStatus.broadcasted: {WithdrawalStatus.confirmed, WithdrawalStatus.failed},
}


class Withdrawal(Base):
    __tablename__ = "withdrawals"
    __table_args__ = (
        Index("ix_withdrawals_status", "status"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    chain = Column(String(20), nullable=False)
    asset = Column(String(20), nullable=False)
    amount = Column(Numeric(36, 18), nullable=False)
    destination_address = Column(String(128), nullable=False)
    status = Column(String(20), nullable=False, default=WithdrawalStatus.pending)
    network_fee = Column(Numeric(36, 18), nullable=False)
    total_deducted = Column(Numeric(36, 18), nullable=False)
    tx_hash = Column(String(128), nullable=True)
    failure_reason = Column(String(500), nullable=True)
    requested_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
