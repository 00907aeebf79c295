from sqlalchemy import Column, Integer, BigInteger, String, Numeric, DateTime, UniqueConstraint, Index
from sqlalchemy.sql import func
from custody.database import Base


class DepositAddressStatus:
    active = "active"
    retired = "retired"


class DepositStatus:
    detected = "DETECTED"
    confirming = "CONFIRMING"
    confirmed = "CONFIRMED"
    credited = "CREDITED"
    failed = "FAILED"

    OPEN = (detected, confirming, confirmed)
    TERMINAL = (credited, failed)


class DepositAddress(Base):
    __tablename__ = "deposit_addresses"
    __table_args__ = (
        UniqueConstraint("chain", "address", name="uq_deposit_address_chain_address"),
        Index("ix_deposit_addresses_chain_status", "chain", "status"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    chain = Column(String(20), nullable=False)
    address = Column(String(128), nullable=False)
    derivation_index = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=DepositAddressStatus.active)
    # Account-model watermark: last block whose transfers are durably recorded
    last_scanned_block = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Deposit(Base):
    __tablename__ = "deposits"
    __table_args__ = (
        UniqueConstraint("chain", "tx_hash", "address", name="uq_deposit_chain_tx_address"),
        Index("ix_deposits_status", "status"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    chain = Column(String(20), nullable=False)
    asset = Column(String(20), nullable=False)
    tx_hash = Column(String(128), nullable=False)
    address = Column(String(128), nullable=False)
    amount = Column(Numeric(36, 18), nullable=False)
    confirmations = Column(Integer, nullable=False, default=0)
    required_confirmations = Column(Integer, nullable=False)
    block_number = Column(BigInteger, nullable=True)
    status = Column(String(20), nullable=False, default=DepositStatus.detected)
    failure_reason = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    credited_at = Column(DateTime(timezone=True), nullable=True)
