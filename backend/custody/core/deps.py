from dataclasses import dataclass
from functools import lru_cache
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from custody.core.security import decode_token
from custody.services.balance_ledger import BalanceLedger
from custody.services.deposit_addresses import DepositAddressService
from custody.services.deposit_scanner import DepositScanner
from custody.services.withdrawal_service import WithdrawalService

bearer = HTTPBearer()


@dataclass
class CurrentUser:
    id: int
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer),
) -> CurrentUser:
    payload = decode_token(credentials.credentials)
    if not payload:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return CurrentUser(id=int(payload["sub"]), role=payload.get("role") or "user")


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin only")
    return user


# Long-lived service singletons; tests swap them through dependency_overrides

@lru_cache
def get_scanner() -> DepositScanner:
    return DepositScanner()


@lru_cache
def get_address_service() -> DepositAddressService:
    return DepositAddressService()


@lru_cache
def get_withdrawal_service() -> WithdrawalService:
    return WithdrawalService()


@lru_cache
def get_ledger() -> BalanceLedger:
    return BalanceLedger()
