from datetime import datetime
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from funds_ledger.api.deps import require_admin
from funds_ledger.db.session import get_db
from funds_ledger.models import LedgerReason, WithdrawalStatus
from funds_ledger.schemas import (
    AdminWithdrawalListResponse,
    BetResponse,
    BetSettleRequest,
    GatewayPaymentCallback,
    LedgerEntryResponse,
    ReconciliationReportResponse,
    TransactionListResponse,
    WithdrawalFailure,
    WithdrawalIntentResponse,
    WithdrawalProcessing,
    WithdrawalReject,
)
from funds_ledger.services.bets import BetManager
from funds_ledger.services.deposits import DepositIntentManager
from funds_ledger.services.ledger import LedgerStore
from funds_ledger.services.wallet import WalletService
from funds_ledger.services.withdrawals import WithdrawalIntentManager

# Operator and trusted-collaborator routes
router = APIRouter(dependencies=[Depends(require_admin)])

@router.post("/payments/callback", response_model=LedgerEntryResponse)
async def gateway_payment_callback(callback: GatewayPaymentCallback, db: AsyncSession = Depends(get_db)):
    service = DepositIntentManager(db)
    return await service.record_gateway_payment(
        callback.account_id, callback.asset.upper(), callback.amount, callback.gateway_transaction_id
    )

@router.get("/admin/withdrawals", response_model=AdminWithdrawalListResponse)
async def list_all_withdrawals(
    status_filter: Optional[WithdrawalStatus] = Query(None),
    user_id: Optional[str] = Query(None, description="Restrict to one account"),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    service = WithdrawalIntentManager(db)
    items, total = await service.list_all(
        status=status_filter, account_id=user_id, date_from=date_from, date_to=date_to, limit=limit, offset=skip
    )
    return {"withdrawals": items, "total": total}

@router.post("/admin/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalIntentResponse)
async def approve_withdrawal(withdrawal_id: UUID, db: AsyncSession = Depends(get_db)):
    service = WithdrawalIntentManager(db)
    return await service.approve(withdrawal_id)

@router.post("/admin/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalIntentResponse)
async def reject_withdrawal(withdrawal_id: UUID, request: WithdrawalReject, db: AsyncSession = Depends(get_db)):
    service = WithdrawalIntentManager(db)
    return await service.reject(withdrawal_id, request.rejection_reason)

@router.post("/admin/withdrawals/{withdrawal_id}/processing", response_model=WithdrawalIntentResponse)
async def mark_withdrawal_processing(withdrawal_id: UUID, request: WithdrawalProcessing,
                                     db: AsyncSession = Depends(get_db)):
    service = WithdrawalIntentManager(db)
    return await service.mark_processing(withdrawal_id, request.tx_hash)

@router.post("/admin/withdrawals/{withdrawal_id}/fail", response_model=WithdrawalIntentResponse)
async def fail_withdrawal(withdrawal_id: UUID, request: WithdrawalFailure, db: AsyncSession = Depends(get_db)):
    service = WithdrawalIntentManager(db)
    return await service.mark_failed(withdrawal_id, request.failure_reason)

@router.post("/admin/bets/{bet_id}/settle", response_model=BetResponse)
async def settle_bet(bet_id: UUID, request: BetSettleRequest, db: AsyncSession = Depends(get_db)):
    service = BetManager(db)
    return await service.settle(bet_id, request.outcome, expected_settle_version=request.expected_settle_version)

@router.get("/admin/transactions", response_model=TransactionListResponse)
async def list_all_transactions(
    user_id: Optional[str] = Query(None),
    asset: Optional[str] = Query(None),
    reason: Optional[LedgerReason] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    store = LedgerStore(db)
    items, total = await store.list_all_entries(account_id=user_id, asset=asset, reason=reason, limit=limit, offset=skip)
    return {"transactions": items, "total": total}

@router.get("/admin/reconciliation/{account_id}", response_model=ReconciliationReportResponse)
async def reconciliation_report(account_id: str, db: AsyncSession = Depends(get_db)):
    service = WalletService(db)
    return await service.reconciliation_report(account_id)
