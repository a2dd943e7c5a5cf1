import uuid
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from funds_ledger.core.config import settings
from funds_ledger.core.dt import utcnow
from funds_ledger.exceptions import InvalidAmountError, InvalidStateError, NotFoundError
from funds_ledger.models import Bet, BetOutcome, BetStatus, HoldKind, LedgerReason
from funds_ledger.services.ledger import LedgerStore
from funds_ledger.services.reservations import ReservationManager

logger = logging.getLogger(__name__)

_SETTLED_STATUS = {
    BetOutcome.WIN: BetStatus.WON,
    BetOutcome.LOSS: BetStatus.LOST,
    BetOutcome.VOID: BetStatus.VOID,
}

class BetManager:
    def __init__(self, db: AsyncSession, ledger: Optional[LedgerStore] = None,
                 min_stake: Optional[Decimal] = None, max_stake: Optional[Decimal] = None):
        self.db = db
        self.ledger = ledger or LedgerStore(db)
        self.reservations = ReservationManager(self.ledger)
        self.min_stake = min_stake if min_stake is not None else settings.MIN_STAKE
        self.max_stake = max_stake if max_stake is not None else settings.MAX_STAKE

    async def place(self, account_id: str, match_id: str, market_key: str, selection_key: str,
                    odds_decimal: Decimal, stake: Decimal, currency: str = "USDT") -> Bet:
        """
        Holds the stake and records a pending bet.
        Raises InsufficientFundsError if the stake is not available.
        """
        if stake < self.min_stake:
            raise InvalidAmountError(f"Minimum stake is {self.min_stake} {currency}")
        if stake > self.max_stake:
            raise InvalidAmountError(f"Maximum stake is {self.max_stake} {currency}")
        if odds_decimal <= 1:
            raise InvalidAmountError("Decimal odds must be greater than 1")

        async def work() -> Bet:
            bet_id = uuid.uuid4()
            await self.reservations.hold(account_id, currency, stake, str(bet_id), HoldKind.BET)
            bet = Bet(
                id=bet_id,
                account_id=account_id,
                match_id=match_id,
                market_key=market_key,
                selection_key=selection_key,
                odds_decimal=odds_decimal,
                stake=stake,
                currency=currency.upper(),
                status=BetStatus.PENDING,
                settle_version=0,
                placed_at=utcnow(),
            )
            self.db.add(bet)
            await self.db.flush()
            return bet

        bet = await self.ledger.atomic(work)
        logger.info(f"Bet {bet.id} placed by {account_id}: {stake} {bet.currency} @ {odds_decimal}")
        return bet

    async def cancel(self, bet_id: UUID, account_id: Optional[str] = None) -> Bet:
        """Refunds the stake of a bet that has not been settled."""
        async def work() -> Bet:
            bet = await self._load(bet_id)
            if account_id is not None and bet.account_id != account_id:
                raise NotFoundError("Bet")
            if bet.status == BetStatus.CANCELLED:
                logger.info(f"No-op replay: bet {bet.id} already cancelled")
                return bet
            if bet.status != BetStatus.PENDING:
                raise InvalidStateError(f"Bet is already {bet.status.value}")

            result = await self.db.execute(
                update(Bet)
                .where(Bet.id == bet.id, Bet.status == BetStatus.PENDING)
                .values(status=BetStatus.CANCELLED, cancelled_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # settled or cancelled concurrently; report what won
                return await self._refreshed(bet.id, expect_cancelled=True)
            await self.reservations.release(str(bet.id))
            return await self._load(bet.id)

        bet = await self.ledger.atomic(work)
        logger.info(f"Bet {bet.id} -> {bet.status.value}")
        return bet

    async def settle(self, bet_id: UUID, outcome: BetOutcome,
                     expected_settle_version: Optional[int] = None) -> Bet:
        """
        Settles a pending bet exactly once. The status change is committed
        with "WHERE settle_version = :expected", so of two concurrent settles
        only one applies effects; the other gets the already-settled bet back.
        """
        async def work() -> Bet:
            bet = await self._load(bet_id)
            expected = bet.settle_version if expected_settle_version is None else expected_settle_version
            if bet.settle_version != expected:
                logger.info(
                    f"No-op replay: bet {bet.id} is at settle_version {bet.settle_version}, expected {expected}"
                )
                return bet
            if bet.status != BetStatus.PENDING:
                raise InvalidStateError(f"Bet is {bet.status.value} and cannot be settled")

            payout = bet.stake * bet.odds_decimal if outcome == BetOutcome.WIN else Decimal(0)
            result = await self.db.execute(
                update(Bet)
                .where(
                    Bet.id == bet.id,
                    Bet.settle_version == expected,
                    Bet.status == BetStatus.PENDING,
                )
                .values(
                    status=_SETTLED_STATUS[outcome],
                    settle_version=expected + 1,
                    payout=payout,
                    settled_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.info(f"No-op replay: bet {bet.id} was settled concurrently")
                return await self._refreshed(bet.id)

            reference_id = str(bet.id)
            if outcome == BetOutcome.WIN:
                # stake leaves reserved, full payout (stake included) lands in available
                await self.reservations.capture(reference_id)
                await self.ledger.credit(bet.account_id, bet.currency, payout, LedgerReason.BET_PAYOUT, reference_id)
            elif outcome == BetOutcome.LOSS:
                await self.reservations.capture(reference_id)
            else:
                await self.reservations.release(reference_id)
            return await self._load(bet.id)

        bet = await self.ledger.atomic(work)
        logger.info(f"Bet {bet.id} settled as {bet.status.value} (settle_version {bet.settle_version})")
        return bet

    async def _refreshed(self, bet_id: UUID, expect_cancelled: bool = False) -> Bet:
        bet = await self._load(bet_id)
        if expect_cancelled and bet.status != BetStatus.CANCELLED:
            raise InvalidStateError(f"Bet is already {bet.status.value}")
        return bet

    async def _load(self, bet_id: UUID) -> Bet:
        query = select(Bet).where(Bet.id == bet_id).execution_options(populate_existing=True)
        result = await self.db.execute(query)
        bet = result.scalar_one_or_none()
        if bet is None:
            raise NotFoundError("Bet")
        return bet

    async def get(self, bet_id: UUID, account_id: Optional[str] = None) -> Bet:
        bet = await self._load(bet_id)
        if account_id is not None and bet.account_id != account_id:
            raise NotFoundError("Bet")
        return bet

    async def list_bets(self, account_id: str, status: Optional[BetStatus] = None,
                        limit: int = 100, offset: int = 0) -> Tuple[List[Bet], int]:
        conditions = [Bet.account_id == account_id]
        if status is not None:
            conditions.append(Bet.status == status)

        total = await self.db.scalar(select(func.count()).select_from(Bet).where(*conditions))
        query = select(Bet).where(*conditions).order_by(Bet.placed_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total or 0
