from decimal import Decimal
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from custody.database import get_db
from custody.core.deps import (
    CurrentUser,
    get_address_service,
    get_current_user,
    get_ledger,
    get_withdrawal_service,
)
from custody.models.deposit import Deposit
from custody.schemas.wallet import (
    BalanceResponse,
    DepositAddressRequest,
    DepositAddressResponse,
    DepositResponse,
    FeeEstimateResponse,
    WithdrawRequest,
    WithdrawalResponse,
)
from custody.services.balance_ledger import BalanceLedger
from custody.services.deposit_addresses import DepositAddressService
from custody.services.withdrawal_service import WithdrawalService

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


@router.post("/deposit-address", response_model=DepositAddressResponse)
async def get_deposit_address(
    body: DepositAddressRequest,
    user: CurrentUser = Depends(get_current_user),
    addresses: DepositAddressService = Depends(get_address_service),
):
    """Return the caller's active deposit address for a chain, issuing one on first use."""
    return await addresses.get_or_create(user.id, body.chain)


@router.get("/deposits", response_model=list[DepositResponse])
async def list_deposits(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    query = select(Deposit).where(Deposit.user_id == user.id)
    if status:
        query = query.where(Deposit.status == status.upper())
    return list(await db.scalars(query.order_by(Deposit.id.desc()).limit(limit)))


@router.get("/balances", response_model=list[BalanceResponse])
async def list_balances(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ledger: BalanceLedger = Depends(get_ledger),
):
    return await ledger.list_balances(db, user.id)


@router.get("/withdrawals/fee", response_model=FeeEstimateResponse)
async def estimate_withdrawal_fee(
    chain: str,
    amount: Decimal = Query(gt=0),
    user: CurrentUser = Depends(get_current_user),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    estimate = await withdrawals.estimate_fees(chain, amount)
    return FeeEstimateResponse(
        chain=chain.upper(),
        amount=amount,
        network_fee=estimate.network_fee,
        total=estimate.total,
        currency=estimate.currency,
    )


@router.post("/withdrawals", response_model=WithdrawalResponse)
async def request_withdrawal(
    body: WithdrawRequest,
    user: CurrentUser = Depends(get_current_user),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    """Lock amount + fee and queue the withdrawal for the signer."""
    return await withdrawals.request_withdrawal(user.id, body.chain, body.amount, body.destination_address)


@router.get("/withdrawals", response_model=list[WithdrawalResponse])
async def list_withdrawals(
    status: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    return await withdrawals.list_withdrawals(user_id=user.id, status=status)


@router.post("/withdrawals/{withdrawal_id}/cancel", response_model=WithdrawalResponse)
async def cancel_withdrawal(
    withdrawal_id: int,
    user: CurrentUser = Depends(get_current_user),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    return await withdrawals.cancel_withdrawal(withdrawal_id, user.id)
