"""
Reconciliation loop: the only place where time-based polling lives.

Each tick asks the chain watcher about every open deposit and every
processing withdrawal, feeds what it sees into the intent managers, then
sweeps expired deposit intents. Overlapping ticks are harmless because every
manager operation it calls is idempotent.
"""
from dataclasses import dataclass
from typing import Optional
from uuid import UUID
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from funds_ledger.core.config import settings
from funds_ledger.core.policy import DEFAULT_POLICIES, PolicyTable
from funds_ledger.exceptions import ExternalCollaboratorError, LedgerError
from funds_ledger.integrations.base import ChainWatcher
from funds_ledger.services.deposits import DepositIntentManager
from funds_ledger.services.withdrawals import WithdrawalIntentManager

logger = logging.getLogger(__name__)

JOB_ID = "funds_ledger.reconcile"


@dataclass
class TickReport:
    deposits_checked: int = 0
    deposits_advanced: int = 0
    withdrawals_checked: int = 0
    withdrawals_advanced: int = 0
    expired: int = 0
    errors: int = 0


@dataclass(frozen=True)
class _DepositTarget:
    id: UUID
    asset: str
    network: str
    address: str
    status: str
    confirmations: int


@dataclass(frozen=True)
class _WithdrawalTarget:
    id: UUID
    network: str
    tx_hash: str
    status: str
    confirmations: int


class ReconciliationLoop:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], chain_watcher: ChainWatcher,
                 policies: PolicyTable = DEFAULT_POLICIES, retry_attempts: Optional[int] = None,
                 retry_max_wait: float = 8):
        self.session_factory = session_factory
        self.chain_watcher = chain_watcher
        self.policies = policies
        self.retry_attempts = retry_attempts or settings.COLLABORATOR_RETRY_ATTEMPTS
        self.retry_max_wait = retry_max_wait

    def schedule(self, scheduler: AsyncIOScheduler, interval_seconds: Optional[int] = None) -> None:
        """Registers `tick` as an interval job; a late tick is coalesced, never stacked."""
        scheduler.add_job(
            self.tick,
            trigger="interval",
            seconds=interval_seconds or settings.RECONCILE_INTERVAL_SECONDS,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Reconciliation job registered (every {interval_seconds or settings.RECONCILE_INTERVAL_SECONDS}s)")

    async def tick(self) -> TickReport:
        report = TickReport()

        # Snapshot the work list as plain values; each item then gets its own
        # session so one failure cannot poison the others.
        async with self.session_factory() as db:
            deposits = [
                _DepositTarget(i.id, i.asset, i.network, i.address, i.status.value, i.confirmations)
                for i in await DepositIntentManager(db, policies=self.policies).list_open()
            ]
            withdrawals = [
                _WithdrawalTarget(i.id, i.network, i.tx_hash, i.status.value, i.confirmations)
                for i in await WithdrawalIntentManager(db, policies=self.policies).list_processing()
                if i.tx_hash
            ]

        for target in deposits:
            report.deposits_checked += 1
            if await self._sync_deposit(target, report):
                report.deposits_advanced += 1

        for target in withdrawals:
            report.withdrawals_checked += 1
            if await self._sync_withdrawal(target, report):
                report.withdrawals_advanced += 1

        try:
            async with self.session_factory() as db:
                report.expired = await DepositIntentManager(db, policies=self.policies).expire_stale()
        except Exception:
            report.errors += 1
            logger.exception("Expiry sweep failed, will retry next tick")

        logger.info(f"Reconciliation tick done: {report}")
        return report

    async def _observe(self, call, *args):
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=self.retry_max_wait),
            retry=retry_if_exception_type(ExternalCollaboratorError),
            reraise=True,
        )
        return await retrying(call, *args)

    async def _sync_deposit(self, target: _DepositTarget, report: TickReport) -> bool:
        try:
            observation = await self._observe(
                self.chain_watcher.get_address_activity, target.asset, target.network, target.address
            )
        except ExternalCollaboratorError as exc:
            report.errors += 1
            logger.warning(f"Chain watcher unavailable for deposit {target.id}, will retry next tick: {exc.detail}")
            return False
        except Exception:
            report.errors += 1
            logger.exception(f"Chain watcher lookup failed for deposit {target.id}")
            return False
        if observation is None:
            return False

        try:
            async with self.session_factory() as db:
                manager = DepositIntentManager(db, policies=self.policies)
                if observation.failed:
                    intent = await manager.mark_failed(target.id, f"Transaction {observation.tx_hash} failed on chain")
                else:
                    intent = await manager.on_chain_event(
                        target.id, observation.tx_hash, observation.confirmations, observation.amount
                    )
        except LedgerError as exc:
            report.errors += 1
            logger.warning(f"Deposit {target.id} not advanced: {exc.detail}")
            return False
        except Exception:
            report.errors += 1
            logger.exception(f"Deposit {target.id} not advanced")
            return False
        return intent.status.value != target.status or intent.confirmations != target.confirmations

    async def _sync_withdrawal(self, target: _WithdrawalTarget, report: TickReport) -> bool:
        try:
            observation = await self._observe(self.chain_watcher.get_transaction, target.network, target.tx_hash)
        except ExternalCollaboratorError as exc:
            report.errors += 1
            logger.warning(f"Chain watcher unavailable for withdrawal {target.id}, will retry next tick: {exc.detail}")
            return False
        except Exception:
            report.errors += 1
            logger.exception(f"Chain watcher lookup failed for withdrawal {target.id}")
            return False
        if observation is None:
            return False

        try:
            async with self.session_factory() as db:
                manager = WithdrawalIntentManager(db, policies=self.policies)
                if observation.failed:
                    intent = await manager.mark_failed(target.id, f"Transaction {target.tx_hash} failed on chain")
                else:
                    intent = await manager.on_chain_confirmation(target.id, observation.confirmations)
        except LedgerError as exc:
            report.errors += 1
            logger.warning(f"Withdrawal {target.id} not advanced: {exc.detail}")
            return False
        except Exception:
            report.errors += 1
            logger.exception(f"Withdrawal {target.id} not advanced")
            return False
        return intent.status.value != target.status or intent.confirmations != target.confirmations
