from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from funds_ledger.api.deps import get_account_id, get_address_provider, get_policies
from funds_ledger.core.policy import PolicyTable
from funds_ledger.db.session import get_db
from funds_ledger.integrations import AddressProvider
from funds_ledger.models import BetStatus, WithdrawalStatus
from funds_ledger.schemas import (
    BetListResponse,
    BetPlaceRequest,
    BetResponse,
    CryptoBalanceResponse,
    DepositIntentCreate,
    DepositIntentResponse,
    LedgerEntryResponse,
    SupportedAssetResponse,
    TotalBalanceResponse,
    WithdrawalIntentCreate,
    WithdrawalIntentResponse,
    WithdrawalListResponse,
)
from funds_ledger.services.bets import BetManager
from funds_ledger.services.deposits import DepositIntentManager
from funds_ledger.services.wallet import WalletService
from funds_ledger.services.withdrawals import WithdrawalIntentManager

router = APIRouter()

# Deposits
@router.get("/deposits/supported-assets", response_model=List[SupportedAssetResponse])
async def supported_assets(policies: PolicyTable = Depends(get_policies)):
    return policies.supported_assets()

@router.post("/deposits/initiate", response_model=DepositIntentResponse, status_code=status.HTTP_201_CREATED)
async def initiate_deposit(
    request: DepositIntentCreate,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    address_provider: Optional[AddressProvider] = Depends(get_address_provider),
    policies: PolicyTable = Depends(get_policies),
):
    service = DepositIntentManager(db, address_provider=address_provider, policies=policies)
    return await service.create(account_id, request.asset, request.network, request.amount_usd)

@router.get("/deposits/history", response_model=List[DepositIntentResponse])
async def deposit_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
):
    service = DepositIntentManager(db)
    return await service.history(account_id, limit=limit, offset=offset)

@router.get("/deposits/{deposit_id}", response_model=DepositIntentResponse)
async def get_deposit(deposit_id: UUID, account_id: str = Depends(get_account_id), db: AsyncSession = Depends(get_db)):
    service = DepositIntentManager(db)
    return await service.get(deposit_id, account_id=account_id)

# Withdrawals
@router.post("/withdrawals/initiate", response_model=WithdrawalIntentResponse, status_code=status.HTTP_201_CREATED)
async def initiate_withdrawal(
    request: WithdrawalIntentCreate,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    policies: PolicyTable = Depends(get_policies),
):
    service = WithdrawalIntentManager(db, policies=policies)
    return await service.initiate(
        account_id,
        request.asset,
        request.network,
        request.amount_crypto,
        request.to_address,
        memo=request.memo,
        client_request_id=request.client_request_id,
    )

@router.get("/withdrawals", response_model=WithdrawalListResponse)
async def list_withdrawals(
    status_filter: Optional[WithdrawalStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
):
    service = WithdrawalIntentManager(db)
    withdrawals, total = await service.list_withdrawals(account_id, status=status_filter, limit=limit, offset=offset)
    return WithdrawalListResponse(
        withdrawals=[WithdrawalIntentResponse.model_validate(w) for w in withdrawals],
        total=total,
        limit=limit,
        offset=offset,
    )

@router.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalIntentResponse)
async def get_withdrawal(withdrawal_id: UUID, account_id: str = Depends(get_account_id),
                         db: AsyncSession = Depends(get_db)):
    service = WithdrawalIntentManager(db)
    return await service.get(withdrawal_id, account_id=account_id)

@router.post("/withdrawals/{withdrawal_id}/cancel", response_model=WithdrawalIntentResponse)
async def cancel_withdrawal(withdrawal_id: UUID, account_id: str = Depends(get_account_id),
                            db: AsyncSession = Depends(get_db)):
    service = WithdrawalIntentManager(db)
    return await service.cancel(withdrawal_id, account_id=account_id)

# Bets
@router.post("/bets/place", response_model=BetResponse, status_code=status.HTTP_201_CREATED)
async def place_bet(request: BetPlaceRequest, account_id: str = Depends(get_account_id),
                    db: AsyncSession = Depends(get_db)):
    service = BetManager(db)
    return await service.place(
        account_id,
        request.match_id,
        request.market_key,
        request.selection_key,
        request.odds_decimal,
        request.stake,
        currency=request.currency,
    )

@router.get("/bets", response_model=BetListResponse)
async def list_bets(
    status_filter: Optional[BetStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
):
    service = BetManager(db)
    bets, total = await service.list_bets(account_id, status=status_filter, limit=limit, offset=offset)
    return BetListResponse(
        bets=[BetResponse.model_validate(b) for b in bets],
        total=total,
        limit=limit,
        offset=offset,
    )

@router.get("/bets/{bet_id}", response_model=BetResponse)
async def get_bet(bet_id: UUID, account_id: str = Depends(get_account_id), db: AsyncSession = Depends(get_db)):
    service = BetManager(db)
    return await service.get(bet_id, account_id=account_id)

@router.post("/bets/{bet_id}/cancel", response_model=BetResponse)
async def cancel_bet(bet_id: UUID, account_id: str = Depends(get_account_id), db: AsyncSession = Depends(get_db)):
    service = BetManager(db)
    return await service.cancel(bet_id, account_id=account_id)

# Wallet
@router.get("/wallet/balance", response_model=CryptoBalanceResponse)
async def get_balance(asset: str = Query("USDT", min_length=1), account_id: str = Depends(get_account_id),
                      db: AsyncSession = Depends(get_db)):
    service = WalletService(db)
    return await service.get_crypto_balance(account_id, asset.upper())

@router.get("/wallet/total-balance", response_model=TotalBalanceResponse)
async def get_total_balance(account_id: str = Depends(get_account_id), db: AsyncSession = Depends(get_db),
                            policies: PolicyTable = Depends(get_policies)):
    service = WalletService(db, policies=policies)
    return await service.get_total_balance(account_id)

@router.get("/wallet/transactions", response_model=List[LedgerEntryResponse])
async def get_transactions(
    asset: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
):
    service = WalletService(db)
    return await service.get_transactions(account_id, asset=asset.upper() if asset else None,
                                          limit=limit, offset=offset)
