from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class DepositAddressRequest(BaseModel):
    chain: str


class DepositAddressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    chain: str
    address: str
    derivation_index: int
    status: str
    created_at: Optional[datetime] = None


class DepositResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    chain: str
    asset: str
    tx_hash: str
    address: str
    amount: Decimal
    confirmations: int
    required_confirmations: int
    block_number: Optional[int] = None
    status: str
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None


class BalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    asset: str
    available: Decimal
    locked: Decimal


class FeeEstimateResponse(BaseModel):
    chain: str
    amount: Decimal
    network_fee: Decimal
    total: Decimal
    currency: str


class WithdrawRequest(BaseModel):
    chain: str
    amount: Decimal = Field(gt=0)
    destination_address: str


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    chain: str
    asset: str
    amount: Decimal
    destination_address: str
    status: str
    network_fee: Decimal
    total_deducted: Decimal
    tx_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class BroadcastRequest(BaseModel):
    tx_hash: str = Field(min_length=1)


class FailureRequest(BaseModel):
    reason: str = ""
