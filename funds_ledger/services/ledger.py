from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar
import logging

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt

from funds_ledger.core.config import settings
from funds_ledger.core.dt import utcnow
from funds_ledger.exceptions import (
    DuplicateRequestError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidStateError,
    VersionConflictError,
)
from funds_ledger.models import AssetBalance, LedgerEntry, LedgerReason

# Setup Logger
logger = logging.getLogger(__name__)

T = TypeVar("T")

# scale of the Money columns
AMOUNT_QUANTUM = Decimal("0.00000001")


def _same_amount(stored: Decimal, requested: Decimal) -> bool:
    return Decimal(stored).quantize(AMOUNT_QUANTUM) == Decimal(requested).quantize(AMOUNT_QUANTUM)


class LedgerStore:
    """
    Sole writer of AssetBalance rows.

    Mutators (`credit`, `debit`, `move`) flush but never commit: they are
    meant to be composed inside a unit of work passed to `atomic`, which owns
    the transaction and re-runs the whole unit when a concurrent writer bumped
    the balance version first.
    """

    def __init__(self, db: AsyncSession, max_retries: Optional[int] = None):
        self.db = db
        self.max_retries = max_retries or settings.LEDGER_MAX_RETRIES

    async def atomic(self, work: Callable[[], Awaitable[T]]) -> T:
        """
        Runs `work` in a single transaction and commits it.
        Version conflicts and unique-index races roll back and re-run `work`
        from scratch; anything else rolls back and propagates.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            retry=retry_if_exception_type((VersionConflictError, IntegrityError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    result = await work()
                    await self.db.commit()
                except StaleDataError as exc:
                    # a versioned intent row changed underneath us
                    await self.db.rollback()
                    raise VersionConflictError() from exc
                except Exception:
                    await self.db.rollback()
                    raise
        return result

    async def credit(self, account_id: str, asset: str, amount: Decimal,
                     reason: LedgerReason, reference_id: str) -> LedgerEntry:
        """
        Increases available balance. Replaying the same (reason, reference_id)
        returns the original entry without touching the balance.
        """
        self._check_amount(amount)
        return await self._apply(account_id, asset, amount, Decimal(0), reason, reference_id)

    async def debit(self, account_id: str, asset: str, amount: Decimal,
                    reason: LedgerReason, reference_id: str) -> LedgerEntry:
        """
        Decreases available balance; raises InsufficientFundsError rather than
        letting it go negative.
        """
        self._check_amount(amount)
        return await self._apply(account_id, asset, -amount, Decimal(0), reason, reference_id)

    async def move(self, account_id: str, asset: str, available_delta: Decimal,
                   reserved_delta: Decimal, reason: LedgerReason, reference_id: str) -> LedgerEntry:
        """Generic conditioned write used for holds, releases and captures."""
        return await self._apply(account_id, asset, available_delta, reserved_delta, reason, reference_id)

    async def find_entry(self, reason: LedgerReason, reference_id: str) -> Optional[LedgerEntry]:
        query = select(LedgerEntry).where(
            LedgerEntry.reason == reason,
            LedgerEntry.reference_id == reference_id,
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _apply(self, account_id: str, asset: str, available_delta: Decimal,
                     reserved_delta: Decimal, reason: LedgerReason, reference_id: str) -> LedgerEntry:
        asset = asset.upper()
        existing = await self.find_entry(reason, reference_id)
        if existing:
            if (existing.account_id != account_id or existing.asset != asset
                    or not _same_amount(existing.delta, available_delta)
                    or not _same_amount(existing.reserved_delta, reserved_delta)):
                logger.warning(
                    f"Conflicting replay: {reason.value} for {reference_id} is already entry {existing.id} "
                    f"({existing.account_id} {existing.delta}/{existing.reserved_delta} {existing.asset}), "
                    f"got {account_id} {available_delta}/{reserved_delta} {asset}"
                )
                raise DuplicateRequestError("Reference already used for a different ledger entry")
            logger.info(f"No-op replay: {reason.value} for {reference_id} already applied (entry {existing.id})")
            return existing

        balance = await self._load_balance(account_id, asset)
        new_available = balance.available + available_delta
        new_reserved = balance.reserved + reserved_delta
        if new_available < 0:
            logger.warning(
                f"Rejected {reason.value} for {reference_id}: available {balance.available} {asset}, "
                f"needs {-available_delta}"
            )
            raise InsufficientFundsError()
        if new_reserved < 0:
            raise InvalidStateError(f"Reserved {asset} balance cannot go negative")

        balance.available = new_available
        balance.reserved = new_reserved
        balance.updated_at = utcnow()
        try:
            await self.db.flush()
        except StaleDataError as exc:
            logger.info(f"Version conflict on {account_id}/{asset}, retrying")
            raise VersionConflictError() from exc

        entry = LedgerEntry(
            account_id=account_id,
            asset=asset,
            reason=reason,
            reference_id=reference_id,
            delta=available_delta,
            reserved_delta=reserved_delta,
            balance_after=new_available,
            reserved_after=new_reserved,
            balance_version=balance.version,
        )
        self.db.add(entry)
        await self.db.flush()
        logger.info(
            f"Ledger {reason.value}: {account_id}/{asset} available {available_delta:+} reserved "
            f"{reserved_delta:+} (ref {reference_id}, v{balance.version})"
        )
        return entry

    async def _load_balance(self, account_id: str, asset: str) -> AssetBalance:
        # populate_existing so the conditioned write starts from the committed row
        query = (
            select(AssetBalance)
            .where(AssetBalance.account_id == account_id, AssetBalance.asset == asset)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        balance = result.scalar_one_or_none()
        if balance is None:
            balance = AssetBalance(
                account_id=account_id,
                asset=asset,
                available=Decimal(0),
                reserved=Decimal(0),
                updated_at=utcnow(),
            )
            # INSERTed by the caller's flush at version 1
            self.db.add(balance)
        return balance

    @staticmethod
    def _check_amount(amount: Decimal) -> None:
        if amount <= 0:
            raise InvalidAmountError()

    async def get_balance(self, account_id: str, asset: str) -> AssetBalance:
        """
        Returns the balance row, or an unsaved zero balance if the account
        never touched the asset.
        """
        asset = asset.upper()
        query = select(AssetBalance).where(
            AssetBalance.account_id == account_id,
            AssetBalance.asset == asset,
        ).execution_options(populate_existing=True)
        result = await self.db.execute(query)
        balance = result.scalar_one_or_none()
        if balance is None:
            return AssetBalance(
                account_id=account_id, asset=asset,
                available=Decimal(0), reserved=Decimal(0), version=0,
            )
        return balance

    async def list_balances(self, account_id: str) -> List[AssetBalance]:
        query = select(AssetBalance).where(AssetBalance.account_id == account_id).order_by(AssetBalance.asset)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_entries(self, account_id: str, asset: Optional[str] = None,
                           limit: int = 100, offset: int = 0) -> List[LedgerEntry]:
        """
        Returns ledger entries for an account, oldest first. Within one asset
        the order is the order in which the conditioned writes succeeded.
        """
        query = select(LedgerEntry).where(LedgerEntry.account_id == account_id)
        if asset:
            query = query.where(LedgerEntry.asset == asset.upper())
        query = query.order_by(LedgerEntry.created_at, LedgerEntry.balance_version).limit(limit).offset(offset)
        result = await self.db.execute(query)
        entries = result.scalars().all()
        logger.debug(f"Retrieved {len(entries)} ledger entries for {account_id}")
        return list(entries)

    async def list_all_entries(self, account_id: Optional[str] = None, asset: Optional[str] = None,
                               reason: Optional[LedgerReason] = None, limit: int = 50,
                               offset: int = 0) -> Tuple[List[LedgerEntry], int]:
        """Cross-account view of the log for operators, newest first, with a total count."""
        conditions = []
        if account_id:
            conditions.append(LedgerEntry.account_id == account_id)
        if asset:
            conditions.append(LedgerEntry.asset == asset.upper())
        if reason is not None:
            conditions.append(LedgerEntry.reason == reason)

        total = await self.db.scalar(select(func.count()).select_from(LedgerEntry).where(*conditions))
        query = (
            select(LedgerEntry)
            .where(*conditions)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.balance_version.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total or 0

    async def reconstruct(self, account_id: str, asset: str) -> Tuple[Decimal, Decimal]:
        """Rebuilds (available, reserved) purely from the append-only log."""
        query = select(func.sum(LedgerEntry.delta), func.sum(LedgerEntry.reserved_delta)).where(
            LedgerEntry.account_id == account_id,
            LedgerEntry.asset == asset.upper(),
        )
        result = await self.db.execute(query)
        available, reserved = result.one()
        return Decimal(available or 0), Decimal(reserved or 0)
