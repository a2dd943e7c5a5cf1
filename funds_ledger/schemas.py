
from uuid import UUID
from decimal import Decimal
from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from funds_ledger.models import (
    BetOutcome,
    BetStatus,
    DepositStatus,
    LedgerReason,
    WithdrawalStatus,
)

# Ledger Schemas
class LedgerEntryResponse(BaseModel):
    """
    A single balance mutation. `delta` applies to available funds,
    `reserved_delta` to reserved funds.
    """
    id: UUID
    account_id: str
    asset: str
    reason: LedgerReason
    reference_id: str
    delta: Decimal
    reserved_delta: Decimal
    balance_after: Decimal
    reserved_after: Decimal
    balance_version: int
    created_at: datetime

    class Config:
        from_attributes = True

class CryptoBalanceResponse(BaseModel):
    asset: str
    available: Decimal
    reserved: Decimal
    total: Decimal

class AssetBreakdown(BaseModel):
    asset: str
    available: Decimal
    reserved: Decimal
    total: Decimal
    usd_price: Decimal
    usd_available: Decimal
    usd_reserved: Decimal
    usd_equivalent: Decimal

class TotalBalanceResponse(BaseModel):
    """
    Unified balance across all assets, valued in USD.
    """
    currency: str
    total_available_usd: Decimal
    total_reserved_usd: Decimal
    total_balance_usd: Decimal
    breakdown: List[AssetBreakdown] = []

class AssetReconciliation(BaseModel):
    asset: str
    available: Decimal
    reserved: Decimal
    ledger_available: Decimal
    ledger_reserved: Decimal
    version: int
    consistent: bool

class ReconciliationReportResponse(BaseModel):
    account_id: str
    consistent: bool
    assets: List[AssetReconciliation] = []

# Deposit Schemas
class DepositIntentCreate(BaseModel):
    asset: str
    network: str
    amount_usd: Decimal = Field(..., gt=0)

class DepositIntentResponse(BaseModel):
    id: UUID
    asset: str
    network: str
    address: str
    memo: Optional[str] = None
    amount_usd: Decimal
    amount_crypto: Optional[Decimal] = None
    required_confirmations: int
    confirmations: int
    status: DepositStatus
    tx_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    detected_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class SupportedAssetResponse(BaseModel):
    asset: str
    networks: List[str]
    memo_required: bool
    min_deposit_usd: Decimal

class GatewayPaymentCallback(BaseModel):
    """
    Success notification from a card/PayPal/bank processor.
    `gateway_transaction_id` is the idempotency key.
    """
    account_id: str
    amount: Decimal = Field(..., gt=0)
    asset: str = "USD"
    gateway_transaction_id: str = Field(..., min_length=1)

# Withdrawal Schemas
class WithdrawalIntentCreate(BaseModel):
    """
    Withdrawal request. `client_request_id` makes retries of the same
    request safe.
    """
    asset: str = "USDT"
    network: str = "TRC20"
    amount_crypto: Decimal = Field(..., gt=0)
    to_address: str = Field(..., min_length=1)
    memo: Optional[str] = None
    client_request_id: str = Field(..., min_length=1, max_length=128)

class WithdrawalIntentResponse(BaseModel):
    id: UUID
    asset: str
    network: str
    amount_crypto: Decimal
    amount_usd: Decimal
    to_address: str
    memo: Optional[str] = None
    status: WithdrawalStatus
    tx_hash: Optional[str] = None
    confirmations: int
    required_confirmations: int
    network_fee: Optional[Decimal] = None
    platform_fee: Decimal
    failure_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    client_request_id: str
    created_at: datetime
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class WithdrawalListResponse(BaseModel):
    withdrawals: List[WithdrawalIntentResponse]
    total: int
    limit: int
    offset: int

class AdminWithdrawalResponse(WithdrawalIntentResponse):
    account_id: str

class AdminWithdrawalListResponse(BaseModel):
    withdrawals: List[AdminWithdrawalResponse]
    total: int

class TransactionListResponse(BaseModel):
    transactions: List[LedgerEntryResponse]
    total: int

class WithdrawalReject(BaseModel):
    rejection_reason: str = Field(..., min_length=1)

class WithdrawalProcessing(BaseModel):
    tx_hash: str = Field(..., min_length=1)

class WithdrawalFailure(BaseModel):
    failure_reason: str = Field(..., min_length=1)

# Bet Schemas
class BetPlaceRequest(BaseModel):
    match_id: str
    market_key: str
    selection_key: str
    odds_decimal: Decimal = Field(..., gt=1)
    stake: Decimal = Field(..., gt=0)
    currency: str = "USDT"

    @field_validator("match_id", mode="before")
    def match_id_as_string(cls, v):
        return str(v)

class BetResponse(BaseModel):
    id: UUID
    match_id: str
    market_key: str
    selection_key: str
    odds_decimal: Decimal
    stake: Decimal
    currency: str
    status: BetStatus
    settle_version: int
    payout: Optional[Decimal] = None
    potential_payout: Decimal
    potential_profit: Decimal
    placed_at: datetime
    settled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class BetListResponse(BaseModel):
    bets: List[BetResponse]
    total: int
    limit: int
    offset: int

class BetSettleRequest(BaseModel):
    outcome: BetOutcome
    expected_settle_version: Optional[int] = Field(default=None, ge=0)
