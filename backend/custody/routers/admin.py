from dataclasses import asdict
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from custody.database import get_db
from custody.core.deps import (
    CurrentUser,
    get_address_service,
    get_scanner,
    get_withdrawal_service,
    require_admin,
)
from custody.models.deposit import Deposit
from custody.schemas.wallet import (
    BroadcastRequest,
    DepositAddressResponse,
    DepositResponse,
    FailureRequest,
    WithdrawalResponse,
)
from custody.services.deposit_addresses import DepositAddressService
from custody.services.deposit_scanner import DepositScanner
from custody.services.withdrawal_service import WithdrawalService

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ── Deposits ──────────────────────────────────────────────────────────────

@router.post("/deposits/scan")
async def trigger_scan(
    admin: CurrentUser = Depends(require_admin),
    scanner: DepositScanner = Depends(get_scanner),
):
    """Run one scan cycle now. Skipped if a cycle is already in flight."""
    report = await scanner.run_cycle()
    if report is None:
        return {"skipped": True}
    return {
        "skipped": False,
        "deposits_detected": report.deposits_detected,
        "chains": {name: asdict(chain) for name, chain in report.chains.items()},
        "sweep": asdict(report.sweep) if report.sweep else None,
        "errors": report.all_errors,
    }


@router.post("/deposits/sweep")
async def trigger_sweep(
    admin: CurrentUser = Depends(require_admin),
    scanner: DepositScanner = Depends(get_scanner),
):
    report = await scanner.run_sweep()
    if report is None:
        return {"skipped": True}
    return {"skipped": False, **asdict(report)}


@router.get("/deposits", response_model=list[DepositResponse])
async def list_deposits(
    status: Optional[str] = None,
    chain: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Deposit)
    if status:
        query = query.where(Deposit.status == status.upper())
    if chain:
        query = query.where(Deposit.chain == chain.upper())
    return list(await db.scalars(query.order_by(Deposit.id.desc()).limit(limit)))


@router.post("/deposits/{deposit_id}/credit", response_model=DepositResponse)
async def credit_deposit(
    deposit_id: int,
    admin: CurrentUser = Depends(require_admin),
    scanner: DepositScanner = Depends(get_scanner),
):
    """Retry crediting a deposit left in CONFIRMED."""
    return await scanner.tracker.credit_deposit(deposit_id)


@router.post("/deposit-addresses/{address_id}/retire", response_model=DepositAddressResponse)
async def retire_deposit_address(
    address_id: int,
    admin: CurrentUser = Depends(require_admin),
    addresses: DepositAddressService = Depends(get_address_service),
):
    return await addresses.retire(address_id)


# ── Withdrawals (signer callbacks) ────────────────────────────────────────

@router.get("/withdrawals", response_model=list[WithdrawalResponse])
async def list_withdrawals(
    status: Optional[str] = None,
    admin: CurrentUser = Depends(require_admin),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    return await withdrawals.list_withdrawals(status=status)


@router.post("/withdrawals/{withdrawal_id}/processing", response_model=WithdrawalResponse)
async def start_processing(
    withdrawal_id: int,
    admin: CurrentUser = Depends(require_admin),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    return await withdrawals.start_processing(withdrawal_id)


@router.post("/withdrawals/{withdrawal_id}/broadcast", response_model=WithdrawalResponse)
async def record_broadcast(
    withdrawal_id: int,
    body: BroadcastRequest,
    admin: CurrentUser = Depends(require_admin),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    return await withdrawals.record_broadcast(withdrawal_id, body.tx_hash)


@router.post("/withdrawals/{withdrawal_id}/confirmed", response_model=WithdrawalResponse)
async def record_confirmed(
    withdrawal_id: int,
    admin: CurrentUser = Depends(require_admin),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    return await withdrawals.record_confirmed(withdrawal_id)


@router.post("/withdrawals/{withdrawal_id}/failed", response_model=WithdrawalResponse)
async def record_failed(
    withdrawal_id: int,
    body: FailureRequest,
    admin: CurrentUser = Depends(require_admin),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    return await withdrawals.record_failed(withdrawal_id, body.reason)
