from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy import select

from funds_ledger.core.dt import utcnow
from funds_ledger.exceptions import HoldNotFoundError, InvalidAmountError, InvalidStateError
from funds_ledger.models import Hold, HoldKind, HoldStatus, LedgerReason
from funds_ledger.services.ledger import LedgerStore

logger = logging.getLogger(__name__)

_REASONS = {
    HoldKind.BET: (LedgerReason.BET_HOLD, LedgerReason.BET_RELEASE, LedgerReason.BET_CAPTURE),
    HoldKind.WITHDRAWAL: (
        LedgerReason.WITHDRAWAL_HOLD,
        LedgerReason.WITHDRAWAL_RELEASE,
        LedgerReason.WITHDRAWAL_CAPTURE,
    ),
}

class ReservationManager:
    """
    Moves funds between available and reserved on behalf of bets and
    withdrawals. Every operation is keyed by the owning entity's id and is
    safe to repeat. Like LedgerStore mutators, these run inside the caller's
    unit of work and do not commit.
    """

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger
        self.db = ledger.db

    async def get_hold(self, reference_id: str) -> Optional[Hold]:
        query = select(Hold).where(Hold.reference_id == reference_id).execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def hold(self, account_id: str, asset: str, amount: Decimal,
                   reference_id: str, kind: HoldKind) -> Hold:
        """
        Reserves `amount` of the account's available balance.
        Raises InsufficientFundsError if available is short.
        """
        if amount <= 0:
            raise InvalidAmountError("Hold amount must be positive")
        existing = await self.get_hold(reference_id)
        if existing:
            logger.info(f"No-op replay: hold {reference_id} already exists ({existing.status.value})")
            return existing

        hold_reason, _, _ = _REASONS[kind]
        await self.ledger.move(account_id, asset, -amount, amount, hold_reason, reference_id)
        hold = Hold(
            account_id=account_id,
            asset=asset.upper(),
            kind=kind,
            reference_id=reference_id,
            amount=amount,
            status=HoldStatus.ACTIVE,
        )
        self.db.add(hold)
        await self.db.flush()
        return hold

    async def release(self, reference_id: str) -> Hold:
        """Returns the held amount to available."""
        hold = await self._require(reference_id)
        if hold.status == HoldStatus.RELEASED:
            logger.info(f"No-op replay: hold {reference_id} already released")
            return hold
        if hold.status == HoldStatus.CAPTURED:
            raise InvalidStateError(f"Hold {reference_id} was already captured")

        _, release_reason, _ = _REASONS[hold.kind]
        await self.ledger.move(hold.account_id, hold.asset, hold.amount, -hold.amount,
                               release_reason, reference_id)
        hold.status = HoldStatus.RELEASED
        hold.updated_at = utcnow()
        await self.db.flush()
        return hold

    async def capture(self, reference_id: str, actual_amount: Optional[Decimal] = None) -> Hold:
        """
        Removes the hold from reserved without returning it to available.
        With `actual_amount` below the held amount, the difference goes back
        to available.
        """
        hold = await self._require(reference_id)
        if hold.status == HoldStatus.CAPTURED:
            logger.info(f"No-op replay: hold {reference_id} already captured")
            return hold
        if hold.status == HoldStatus.RELEASED:
            raise InvalidStateError(f"Hold {reference_id} was already released")

        captured = hold.amount if actual_amount is None else actual_amount
        if captured <= 0 or captured > hold.amount:
            raise InvalidAmountError(f"Capture amount must be within (0, {hold.amount}]")

        _, release_reason, capture_reason = _REASONS[hold.kind]
        await self.ledger.move(hold.account_id, hold.asset, Decimal(0), -captured,
                               capture_reason, reference_id)
        remainder = hold.amount - captured
        if remainder > 0:
            await self.ledger.move(hold.account_id, hold.asset, remainder, -remainder,
                                   release_reason, reference_id)
        hold.status = HoldStatus.CAPTURED
        hold.captured_amount = captured
        hold.updated_at = utcnow()
        await self.db.flush()
        return hold

    async def _require(self, reference_id: str) -> Hold:
        hold = await self.get_hold(reference_id)
        if hold is None:
            raise HoldNotFoundError()
        return hold
