import secrets
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status

from funds_ledger.core.config import settings
from funds_ledger.core.policy import DEFAULT_POLICIES, PolicyTable
from funds_ledger.integrations import AddressProvider, HttpAddressProvider

async def get_account_id(x_account_id: Optional[str] = Header(default=None, alias="X-Account-Id")) -> str:
    """
    The caller's account id, already verified by the upstream auth layer.
    """
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing account identity")
    return x_account_id.strip()

async def require_admin(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.ADMIN_TOKEN):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin token required")

def get_policies() -> PolicyTable:
    return DEFAULT_POLICIES

@lru_cache
def get_address_provider() -> Optional[AddressProvider]:
    if not settings.ADDRESS_PROVIDER_URL:
        return None
    return HttpAddressProvider(settings.ADDRESS_PROVIDER_URL)
