import uuid
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from funds_ledger.core.dt import as_utc, utcnow
from funds_ledger.core.policy import DEFAULT_POLICIES, AssetPolicy, PolicyTable
from funds_ledger.exceptions import (
    DuplicateRequestError,
    InsufficientBalanceError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
)
from funds_ledger.models import HoldKind, WithdrawalIntent, WithdrawalStatus
from funds_ledger.services.ledger import LedgerStore
from funds_ledger.services.reservations import ReservationManager

logger = logging.getLogger(__name__)

FEE_QUANTUM = Decimal("0.00000001")

class WithdrawalIntentManager:
    """
    Outbound transfers: pending -> approved -> processing -> completed, with
    rejected / cancelled / failed exits that release the held funds.
    """

    def __init__(self, db: AsyncSession, policies: PolicyTable = DEFAULT_POLICIES,
                 ledger: Optional[LedgerStore] = None):
        self.db = db
        self.ledger = ledger or LedgerStore(db)
        self.reservations = ReservationManager(self.ledger)
        self.policies = policies

    async def initiate(self, account_id: str, asset: str, network: str, amount_crypto: Decimal,
                       to_address: str, memo: Optional[str] = None,
                       client_request_id: Optional[str] = None) -> WithdrawalIntent:
        """
        Creates a pending withdrawal and holds amount plus fees.
        A retried request carrying the same `client_request_id` gets the
        original intent back instead of a second hold.
        """
        policy = self.policies.get(asset, network)
        client_request_id = client_request_id or str(uuid.uuid4())

        existing = await self._find_by_client_request(account_id, client_request_id)
        if existing:
            return self._replay(existing, policy, amount_crypto, to_address)

        if amount_crypto <= 0:
            raise InvalidAmountError()
        if amount_crypto < policy.min_withdrawal:
            raise InvalidAmountError(f"Minimum withdrawal is {policy.min_withdrawal} {policy.asset}")
        if not to_address or not to_address.strip():
            raise InvalidAmountError("Destination address is required")
        if policy.memo_required and not memo:
            raise InvalidAmountError(f"Memo is required for {policy.asset}/{policy.network}")

        network_fee = policy.network_fee
        platform_fee = (amount_crypto * policy.platform_fee_rate).quantize(FEE_QUANTUM)
        hold_amount = amount_crypto + network_fee + platform_fee

        async def work() -> WithdrawalIntent:
            existing = await self._find_by_client_request(account_id, client_request_id)
            if existing:
                return self._replay(existing, policy, amount_crypto, to_address)

            balance = await self.ledger.get_balance(account_id, policy.asset)
            if amount_crypto > balance.available - policy.min_reserve:
                raise InsufficientBalanceError()

            intent_id = uuid.uuid4()
            try:
                await self.reservations.hold(account_id, policy.asset, hold_amount, str(intent_id),
                                             HoldKind.WITHDRAWAL)
            except InsufficientFundsError as exc:
                raise InsufficientBalanceError(
                    f"Insufficient balance: {hold_amount} {policy.asset} needed including fees"
                ) from exc

            now = utcnow()
            intent = WithdrawalIntent(
                id=intent_id,
                account_id=account_id,
                asset=policy.asset,
                network=policy.network,
                amount_crypto=amount_crypto,
                amount_usd=amount_crypto * policy.usd_rate,
                to_address=to_address.strip(),
                memo=memo,
                status=WithdrawalStatus.PENDING,
                confirmations=0,
                required_confirmations=policy.withdrawal_confirmations,
                network_fee=network_fee,
                platform_fee=platform_fee,
                hold_amount=hold_amount,
                client_request_id=client_request_id,
                created_at=now,
                updated_at=now,
            )
            self.db.add(intent)
            await self.db.flush()
            logger.info(
                f"Withdrawal {intent.id} initiated for {account_id}: {amount_crypto} {policy.asset} "
                f"to {intent.to_address} (held {hold_amount})"
            )
            return intent

        return await self.ledger.atomic(work)

    def _replay(self, existing: WithdrawalIntent, policy: AssetPolicy,
                amount_crypto: Decimal, to_address: str) -> WithdrawalIntent:
        same_request = (
            existing.asset == policy.asset
            and existing.network == policy.network
            and existing.amount_crypto == amount_crypto
            and existing.to_address == (to_address or "").strip()
        )
        if not same_request:
            logger.warning(
                f"client_request_id {existing.client_request_id} reused with different parameters "
                f"(withdrawal {existing.id})"
            )
            raise DuplicateRequestError("client_request_id already used for a different withdrawal")
        logger.info(f"No-op replay: withdrawal {existing.id} for client_request_id {existing.client_request_id}")
        return existing

    async def approve(self, intent_id: UUID) -> WithdrawalIntent:
        async def effect(intent: WithdrawalIntent) -> None:
            intent.approved_at = utcnow()

        return await self._transition(intent_id, WithdrawalStatus.APPROVED, {WithdrawalStatus.PENDING}, effect)

    async def mark_processing(self, intent_id: UUID, tx_hash: str) -> WithdrawalIntent:
        """Broadcast happened; record the on-chain transaction."""
        async def effect(intent: WithdrawalIntent) -> None:
            intent.tx_hash = tx_hash
            intent.processed_at = utcnow()

        return await self._transition(intent_id, WithdrawalStatus.PROCESSING, {WithdrawalStatus.APPROVED}, effect)

    async def on_chain_confirmation(self, intent_id: UUID, confirmations: int,
                                    network_fee: Optional[Decimal] = None) -> WithdrawalIntent:
        """
        Records a higher confirmation count; at the required depth the hold is
        captured and the withdrawal completes. Any unspent fee estimate goes
        back to available.
        """
        async def work() -> WithdrawalIntent:
            intent = await self._load(intent_id)
            if intent.status == WithdrawalStatus.COMPLETED:
                logger.info(f"No-op replay: withdrawal {intent.id} already completed")
                return intent
            if intent.status != WithdrawalStatus.PROCESSING:
                raise InvalidStateError(f"Withdrawal is {intent.status.value}, not processing")
            if confirmations <= intent.confirmations:
                logger.info(
                    f"No-op replay: withdrawal {intent.id} has {intent.confirmations} confirmations, "
                    f"got {confirmations}"
                )
                return intent

            intent.confirmations = confirmations
            if network_fee is not None:
                intent.network_fee = network_fee
            if intent.confirmations >= intent.required_confirmations:
                spent = intent.amount_crypto + intent.platform_fee + (intent.network_fee or Decimal(0))
                await self.reservations.capture(str(intent.id), min(spent, intent.hold_amount))
                intent.status = WithdrawalStatus.COMPLETED
                intent.completed_at = utcnow()
                logger.info(f"Withdrawal {intent.id} completed ({intent.tx_hash})")
            await self.db.flush()
            return intent

        return await self.ledger.atomic(work)

    async def cancel(self, intent_id: UUID, account_id: Optional[str] = None) -> WithdrawalIntent:
        """User cancellation, only while the request is still pending."""
        async def effect(intent: WithdrawalIntent) -> None:
            await self.reservations.release(str(intent.id))
            intent.cancelled_at = utcnow()

        return await self._transition(intent_id, WithdrawalStatus.CANCELLED, {WithdrawalStatus.PENDING}, effect,
                                      account_id=account_id)

    async def reject(self, intent_id: UUID, reason: str) -> WithdrawalIntent:
        async def effect(intent: WithdrawalIntent) -> None:
            await self.reservations.release(str(intent.id))
            intent.rejection_reason = reason
            intent.rejected_at = utcnow()

        return await self._transition(
            intent_id, WithdrawalStatus.REJECTED,
            {WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED}, effect,
        )

    async def mark_failed(self, intent_id: UUID, reason: str) -> WithdrawalIntent:
        """Broadcast or chain failure while processing; funds go back to available."""
        async def effect(intent: WithdrawalIntent) -> None:
            await self.reservations.release(str(intent.id))
            intent.failure_reason = reason
            intent.failed_at = utcnow()

        return await self._transition(intent_id, WithdrawalStatus.FAILED, {WithdrawalStatus.PROCESSING}, effect)

    async def _transition(self, intent_id: UUID, target: WithdrawalStatus,
                          allowed: Iterable[WithdrawalStatus],
                          effect: Callable[[WithdrawalIntent], Awaitable[None]],
                          account_id: Optional[str] = None) -> WithdrawalIntent:
        async def work() -> WithdrawalIntent:
            intent = await self._load(intent_id)
            if account_id is not None and intent.account_id != account_id:
                raise NotFoundError("Withdrawal")
            if intent.status == target:
                logger.info(f"No-op replay: withdrawal {intent.id} already {target.value}")
                return intent
            if intent.status not in allowed:
                raise InvalidStateError(
                    f"Cannot move withdrawal from {intent.status.value} to {target.value}"
                )
            await effect(intent)
            intent.status = target
            await self.db.flush()
            logger.info(f"Withdrawal {intent.id} -> {target.value}")
            return intent

        return await self.ledger.atomic(work)

    async def _load(self, intent_id: UUID) -> WithdrawalIntent:
        query = (
            select(WithdrawalIntent)
            .where(WithdrawalIntent.id == intent_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        intent = result.scalar_one_or_none()
        if intent is None:
            raise NotFoundError("Withdrawal")
        return intent

    async def _find_by_client_request(self, account_id: str, client_request_id: str) -> Optional[WithdrawalIntent]:
        query = select(WithdrawalIntent).where(
            WithdrawalIntent.account_id == account_id,
            WithdrawalIntent.client_request_id == client_request_id,
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get(self, intent_id: UUID, account_id: Optional[str] = None) -> WithdrawalIntent:
        intent = await self._load(intent_id)
        if account_id is not None and intent.account_id != account_id:
            raise NotFoundError("Withdrawal")
        return intent

    async def list_withdrawals(self, account_id: str, status: Optional[WithdrawalStatus] = None,
                               limit: int = 20, offset: int = 0) -> Tuple[List[WithdrawalIntent], int]:
        conditions = [WithdrawalIntent.account_id == account_id]
        if status is not None:
            conditions.append(WithdrawalIntent.status == status)

        total = await self.db.scalar(select(func.count()).select_from(WithdrawalIntent).where(*conditions))
        query = (
            select(WithdrawalIntent)
            .where(*conditions)
            .order_by(WithdrawalIntent.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total or 0

    async def list_all(self, status: Optional[WithdrawalStatus] = None, account_id: Optional[str] = None,
                       date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
                       limit: int = 50, offset: int = 0) -> Tuple[List[WithdrawalIntent], int]:
        """
        Operator queue across all accounts, newest first. `date_from` and
        `date_to` bound `created_at` inclusively.
        """
        conditions = []
        if status is not None:
            conditions.append(WithdrawalIntent.status == status)
        if account_id:
            conditions.append(WithdrawalIntent.account_id == account_id)
        if date_from is not None:
            conditions.append(WithdrawalIntent.created_at >= as_utc(date_from))
        if date_to is not None:
            conditions.append(WithdrawalIntent.created_at <= as_utc(date_to))

        total = await self.db.scalar(select(func.count()).select_from(WithdrawalIntent).where(*conditions))
        query = (
            select(WithdrawalIntent)
            .where(*conditions)
            .order_by(WithdrawalIntent.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        items = list(result.scalars().all())
        logger.debug(f"Admin withdrawal listing: {len(items)} of {total} (status={status}, account={account_id})")
        return items, total or 0

    async def list_processing(self) -> List[WithdrawalIntent]:
        query = select(WithdrawalIntent).where(
            WithdrawalIntent.status == WithdrawalStatus.PROCESSING
        ).order_by(WithdrawalIntent.created_at)
        result = await self.db.execute(query)
        return list(result.scalars().all())
