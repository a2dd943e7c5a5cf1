
import enum
import uuid
from decimal import Decimal
from sqlalchemy import (
    Column,
    String,
    Enum,
    DateTime,
    Integer,
    Numeric,
    Index,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base

from funds_ledger.core.dt import utcnow

Base = declarative_base()

# Asset amounts; 8 decimal places covers BTC satoshis and stablecoin cents.
Money = Numeric(precision=28, scale=8, asdecimal=True)

class LedgerReason(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL_HOLD = "withdrawal_hold"
    WITHDRAWAL_RELEASE = "withdrawal_release"
    WITHDRAWAL_CAPTURE = "withdrawal_capture"
    BET_HOLD = "bet_hold"
    BET_RELEASE = "bet_release"
    BET_CAPTURE = "bet_capture"
    BET_PAYOUT = "bet_payout"
    ADJUSTMENT = "adjustment"

class HoldKind(str, enum.Enum):
    BET = "bet"
    WITHDRAWAL = "withdrawal"

class HoldStatus(str, enum.Enum):
    ACTIVE = "active"
    RELEASED = "released"
    CAPTURED = "captured"

class DepositStatus(str, enum.Enum):
    PENDING = "pending"
    DETECTED = "detected"
    CONFIRMED = "confirmed"
    SETTLED = "settled"
    EXPIRED = "expired"
    FAILED = "failed"

class WithdrawalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"

class BetStatus(str, enum.Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    VOID = "void"
    CANCELLED = "cancelled"

class BetOutcome(str, enum.Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    VOID = "VOID"

DEPOSIT_TERMINAL = {DepositStatus.SETTLED, DepositStatus.EXPIRED, DepositStatus.FAILED}
WITHDRAWAL_TERMINAL = {
    WithdrawalStatus.COMPLETED,
    WithdrawalStatus.REJECTED,
    WithdrawalStatus.CANCELLED,
    WithdrawalStatus.FAILED,
}

class AssetBalance(Base):
    """
    Materialized per-account, per-asset balance.
    Only the LedgerStore writes this table, always conditioned on `version`.
    """
    __tablename__ = "asset_balances"
    __table_args__ = (
        UniqueConstraint("account_id", "asset", name="uq_asset_balance_account_asset"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, index=True)
    asset = Column(String(16), nullable=False)
    available = Column(Money, nullable=False, default=Decimal("0"))
    reserved = Column(Money, nullable=False, default=Decimal("0"))
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # UPDATEs are emitted as "... WHERE id = :id AND version = :version"
    __mapper_args__ = {"version_id_col": version}

    @property
    def total(self) -> Decimal:
        return self.available + self.reserved

class LedgerEntry(Base):
    """
    Immutable record of one balance mutation.
    `delta` applies to available, `reserved_delta` to reserved; summing both
    columns for an (account, asset) reproduces the AssetBalance row.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("reason", "reference_id", name="uq_ledger_entry_reason_reference"),
        Index("ix_ledger_entries_account_asset", "account_id", "asset"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False)
    asset = Column(String(16), nullable=False)
    reason = Column(Enum(LedgerReason), nullable=False)
    reference_id = Column(String(128), nullable=False)
    delta = Column(Money, nullable=False)
    reserved_delta = Column(Money, nullable=False, default=Decimal("0"))
    balance_after = Column(Money, nullable=False)
    reserved_after = Column(Money, nullable=False)
    balance_version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

class Hold(Base):
    """Funds reserved against a bet or withdrawal, keyed by the entity id."""
    __tablename__ = "holds"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, index=True)
    asset = Column(String(16), nullable=False)
    kind = Column(Enum(HoldKind), nullable=False)
    reference_id = Column(String(128), nullable=False, unique=True)
    amount = Column(Money, nullable=False)
    captured_amount = Column(Money, nullable=True)
    status = Column(Enum(HoldStatus), default=HoldStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

class DepositIntent(Base):
    __tablename__ = "deposit_intents"
    __table_args__ = (
        # one on-chain transaction funds at most one intent
        UniqueConstraint("network", "tx_hash", name="uq_deposit_intent_network_tx"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, index=True)
    asset = Column(String(16), nullable=False)
    network = Column(String(32), nullable=False)
    address = Column(String(128), nullable=False, index=True)
    memo = Column(String(128), nullable=True)
    amount_usd = Column(Money, nullable=False)
    amount_crypto = Column(Money, nullable=True)
    required_confirmations = Column(Integer, nullable=False)
    confirmations = Column(Integer, nullable=False, default=0)
    status = Column(Enum(DepositStatus), default=DepositStatus.PENDING, nullable=False, index=True)
    tx_hash = Column(String(128), nullable=True)
    failure_reason = Column(String(255), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    detected_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    row_version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}

class WithdrawalIntent(Base):
    __tablename__ = "withdrawal_intents"
    __table_args__ = (
        UniqueConstraint("account_id", "client_request_id", name="uq_withdrawal_client_request"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, index=True)
    asset = Column(String(16), nullable=False)
    network = Column(String(32), nullable=False)
    amount_crypto = Column(Money, nullable=False)
    amount_usd = Column(Money, nullable=False)
    to_address = Column(String(128), nullable=False)
    memo = Column(String(128), nullable=True)
    status = Column(Enum(WithdrawalStatus), default=WithdrawalStatus.PENDING, nullable=False, index=True)
    tx_hash = Column(String(128), nullable=True)
    confirmations = Column(Integer, nullable=False, default=0)
    required_confirmations = Column(Integer, nullable=False)
    network_fee = Column(Money, nullable=True)
    platform_fee = Column(Money, nullable=False, default=Decimal("0"))
    hold_amount = Column(Money, nullable=False)
    failure_reason = Column(String(255), nullable=True)
    rejection_reason = Column(String(255), nullable=True)
    client_request_id = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    row_version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}

class Bet(Base):
    """
    A single-selection bet. `settle_version` is the optimistic guard against
    settling the same bet twice.
    """
    __tablename__ = "bets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, index=True)
    match_id = Column(String(64), nullable=False)
    market_key = Column(String(64), nullable=False)
    selection_key = Column(String(64), nullable=False)
    odds_decimal = Column(Numeric(precision=12, scale=4, asdecimal=True), nullable=False)
    stake = Column(Money, nullable=False)
    currency = Column(String(16), nullable=False, default="USDT")
    status = Column(Enum(BetStatus), default=BetStatus.PENDING, nullable=False, index=True)
    settle_version = Column(Integer, nullable=False, default=0)
    payout = Column(Money, nullable=True)
    placed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def potential_payout(self) -> Decimal:
        return self.stake * self.odds_decimal

    @property
    def potential_profit(self) -> Decimal:
        return self.stake * (self.odds_decimal - 1)
