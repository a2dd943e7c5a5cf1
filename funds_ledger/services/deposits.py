import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from funds_ledger.core.dt import utcnow
from funds_ledger.core.policy import DEFAULT_POLICIES, AssetPolicy, PolicyTable
from funds_ledger.exceptions import (
    ExternalCollaboratorError,
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
)
from funds_ledger.integrations.base import AddressProvider, AllocatedAddress
from funds_ledger.models import DEPOSIT_TERMINAL, DepositIntent, DepositStatus, LedgerEntry, LedgerReason
from funds_ledger.services.ledger import LedgerStore

logger = logging.getLogger(__name__)

class DepositIntentManager:
    """
    Tracks inbound crypto deposits from address allocation to settlement and
    credits the ledger exactly once per intent.
    """

    def __init__(self, db: AsyncSession, address_provider: Optional[AddressProvider] = None,
                 policies: PolicyTable = DEFAULT_POLICIES, ledger: Optional[LedgerStore] = None):
        self.db = db
        self.ledger = ledger or LedgerStore(db)
        self.address_provider = address_provider
        self.policies = policies

    def supported_assets(self) -> List[dict]:
        return self.policies.supported_assets()

    async def create(self, account_id: str, asset: str, network: str, amount_usd: Decimal) -> DepositIntent:
        """
        Opens a deposit intent. `amount_usd` is advisory (QR/display only);
        whatever actually arrives on chain is what gets credited.
        """
        policy = self.policies.get(asset, network)
        if amount_usd <= 0 or amount_usd < policy.min_deposit_usd:
            raise InvalidAmountError(f"Minimum deposit is {policy.min_deposit_usd} USD")

        # Address allocation is remote I/O; keep it out of the write transaction.
        allocated = await self._allocate_address(account_id, policy)

        async def work() -> DepositIntent:
            now = utcnow()
            intent = DepositIntent(
                id=uuid.uuid4(),
                account_id=account_id,
                asset=policy.asset,
                network=policy.network,
                address=allocated.address,
                memo=allocated.memo,
                amount_usd=amount_usd,
                required_confirmations=policy.required_confirmations,
                confirmations=0,
                status=DepositStatus.PENDING,
                expires_at=now + policy.deposit_ttl,
                created_at=now,
                updated_at=now,
            )
            self.db.add(intent)
            await self.db.flush()
            return intent

        intent = await self.ledger.atomic(work)
        logger.info(
            f"Deposit intent {intent.id} opened for {account_id}: {policy.asset}/{policy.network} "
            f"~{amount_usd} USD to {intent.address}"
        )
        return intent

    async def _allocate_address(self, account_id: str, policy: AssetPolicy) -> AllocatedAddress:
        query = (
            select(DepositIntent)
            .where(
                DepositIntent.account_id == account_id,
                DepositIntent.asset == policy.asset,
                DepositIntent.network == policy.network,
            )
            .order_by(DepositIntent.created_at.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        previous = result.scalar_one_or_none()
        if previous:
            return AllocatedAddress(address=previous.address, memo=previous.memo)

        if self.address_provider is None:
            raise ExternalCollaboratorError("No deposit address provider configured")
        allocated = await self.address_provider.allocate_address(account_id, policy.asset, policy.network)
        logger.info(f"Allocated {policy.asset}/{policy.network} deposit address for {account_id}")
        return allocated

    async def on_chain_event(self, intent_id: UUID, tx_hash: str, confirmations: int,
                             amount: Decimal) -> DepositIntent:
        """
        Applies a chain watcher observation. Only a higher confirmation count
        moves the intent forward; the ledger credit happens on the transition
        into `confirmed` and is keyed on the intent id.
        """
        if amount <= 0:
            raise InvalidAmountError("Detected deposit amount must be positive")

        async def work() -> DepositIntent:
            intent = await self._load(intent_id)
            if intent.status in DEPOSIT_TERMINAL:
                logger.info(f"No-op replay: deposit {intent.id} is already {intent.status.value}")
                return intent
            if intent.tx_hash and intent.tx_hash != tx_hash:
                logger.warning(
                    f"Ignoring tx {tx_hash} for deposit {intent.id}: already funded by {intent.tx_hash}"
                )
                return intent
            if intent.status != DepositStatus.PENDING and confirmations <= intent.confirmations:
                logger.info(
                    f"No-op replay: deposit {intent.id} has {intent.confirmations} confirmations, got {confirmations}"
                )
                return intent

            if intent.status == DepositStatus.PENDING and await self._tx_already_used(intent, tx_hash):
                logger.warning(f"Ignoring tx {tx_hash} for deposit {intent.id}: it funded another intent")
                return intent

            now = utcnow()
            if intent.status == DepositStatus.PENDING:
                intent.status = DepositStatus.DETECTED
                intent.tx_hash = tx_hash
                intent.amount_crypto = amount
                intent.detected_at = now
                logger.info(f"Deposit {intent.id} detected: {amount} {intent.asset} in {tx_hash}")
            intent.confirmations = max(confirmations, intent.confirmations)

            if intent.confirmations >= intent.required_confirmations:
                intent.status = DepositStatus.CONFIRMED
                intent.confirmed_at = now
                await self.ledger.credit(
                    intent.account_id, intent.asset, intent.amount_crypto,
                    LedgerReason.DEPOSIT, str(intent.id),
                )
                intent.status = DepositStatus.SETTLED
                intent.settled_at = now
                logger.info(f"Deposit {intent.id} settled: credited {intent.amount_crypto} {intent.asset}")
            await self.db.flush()
            return intent

        return await self.ledger.atomic(work)

    async def mark_failed(self, intent_id: UUID, reason: str) -> DepositIntent:
        async def work() -> DepositIntent:
            intent = await self._load(intent_id)
            if intent.status == DepositStatus.FAILED:
                logger.info(f"No-op replay: deposit {intent.id} already failed")
                return intent
            if intent.status in DEPOSIT_TERMINAL:
                raise InvalidStateError(f"Deposit is already {intent.status.value}")
            intent.status = DepositStatus.FAILED
            intent.failure_reason = reason
            await self.db.flush()
            logger.warning(f"Deposit {intent.id} failed: {reason}")
            return intent

        return await self.ledger.atomic(work)

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Moves open intents past their expiry to `expired`. No balance effect."""
        cutoff = now or utcnow()

        async def work() -> int:
            query = (
                select(DepositIntent)
                .where(
                    DepositIntent.status.in_([DepositStatus.PENDING, DepositStatus.DETECTED]),
                    DepositIntent.expires_at < cutoff,
                )
                .execution_options(populate_existing=True)
            )
            result = await self.db.execute(query)
            intents = result.scalars().all()
            for intent in intents:
                intent.status = DepositStatus.EXPIRED
            await self.db.flush()
            return len(intents)

        expired = await self.ledger.atomic(work)
        if expired:
            logger.info(f"Expired {expired} deposit intents")
        return expired

    async def record_gateway_payment(self, account_id: str, asset: str, amount: Decimal,
                                     gateway_transaction_id: str) -> LedgerEntry:
        """
        Card/PayPal/bank success callback. The gateway transaction id is the
        idempotency key, so a redelivered callback credits nothing.
        """
        entry = await self.ledger.atomic(
            lambda: self.ledger.credit(account_id, asset, amount, LedgerReason.DEPOSIT, gateway_transaction_id)
        )
        logger.info(f"Gateway payment {gateway_transaction_id} recorded for {account_id}: {amount} {asset}")
        return entry

    async def _tx_already_used(self, intent: DepositIntent, tx_hash: str) -> bool:
        query = select(DepositIntent.id).where(
            DepositIntent.network == intent.network,
            DepositIntent.tx_hash == tx_hash,
            DepositIntent.id != intent.id,
        )
        result = await self.db.execute(query)
        return result.first() is not None

    async def _load(self, intent_id: UUID) -> DepositIntent:
        query = (
            select(DepositIntent)
            .where(DepositIntent.id == intent_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        intent = result.scalar_one_or_none()
        if intent is None:
            raise NotFoundError("Deposit")
        return intent

    async def get(self, intent_id: UUID, account_id: Optional[str] = None) -> DepositIntent:
        intent = await self._load(intent_id)
        if account_id is not None and intent.account_id != account_id:
            raise NotFoundError("Deposit")
        return intent

    async def history(self, account_id: str, limit: int = 50, offset: int = 0) -> List[DepositIntent]:
        query = (
            select(DepositIntent)
            .where(DepositIntent.account_id == account_id)
            .order_by(DepositIntent.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_open(self) -> List[DepositIntent]:
        query = select(DepositIntent).where(
            DepositIntent.status.in_([DepositStatus.PENDING, DepositStatus.DETECTED])
        ).order_by(DepositIntent.created_at)
        result = await self.db.execute(query)
        return list(result.scalars().all())
