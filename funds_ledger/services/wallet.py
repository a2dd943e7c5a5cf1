from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from funds_ledger.core.policy import DEFAULT_POLICIES, PolicyTable
from funds_ledger.models import LedgerEntry
from funds_ledger.services.ledger import LedgerStore

logger = logging.getLogger(__name__)

# Gateway (card/PayPal/bank) credits are booked in fiat USD.
FIAT_ASSET = "USD"

class WalletService:
    """Read-side views over the ledger for callers and operators."""

    def __init__(self, db: AsyncSession, policies: PolicyTable = DEFAULT_POLICIES):
        self.db = db
        self.ledger = LedgerStore(db)
        self.policies = policies

    async def get_crypto_balance(self, account_id: str, asset: str = "USDT") -> dict:
        balance = await self.ledger.get_balance(account_id, asset)
        return {
            "asset": balance.asset,
            "available": balance.available,
            "reserved": balance.reserved,
            "total": balance.total,
        }

    def _usd_rate(self, asset: str) -> Decimal:
        if asset == FIAT_ASSET:
            return Decimal(1)
        rate = self.policies.usd_rate(asset)
        if rate is None:
            logger.warning(f"No USD reference rate for {asset}, valuing at 0")
            return Decimal(0)
        return rate

    async def get_total_balance(self, account_id: str) -> dict:
        """
        Unified balance across every asset the account holds, valued in USD
        at the policy reference rates.
        """
        breakdown = []
        total_available = Decimal(0)
        total_reserved = Decimal(0)
        for balance in await self.ledger.list_balances(account_id):
            rate = self._usd_rate(balance.asset)
            usd_available = balance.available * rate
            usd_reserved = balance.reserved * rate
            total_available += usd_available
            total_reserved += usd_reserved
            breakdown.append({
                "asset": balance.asset,
                "available": balance.available,
                "reserved": balance.reserved,
                "total": balance.total,
                "usd_price": rate,
                "usd_available": usd_available,
                "usd_reserved": usd_reserved,
                "usd_equivalent": usd_available + usd_reserved,
            })
        return {
            "currency": "USD",
            "total_available_usd": total_available,
            "total_reserved_usd": total_reserved,
            "total_balance_usd": total_available + total_reserved,
            "breakdown": breakdown,
        }

    async def get_transactions(self, account_id: str, asset: Optional[str] = None,
                               limit: int = 100, offset: int = 0) -> List[LedgerEntry]:
        return await self.ledger.list_entries(account_id, asset=asset, limit=limit, offset=offset)

    async def reconciliation_report(self, account_id: str) -> dict:
        """
        Compares each materialized balance with the one rebuilt from the
        ledger log. Any mismatch means something wrote AssetBalance directly.
        """
        assets = []
        consistent = True
        for balance in await self.ledger.list_balances(account_id):
            available, reserved = await self.ledger.reconstruct(account_id, balance.asset)
            ok = (
                available == balance.available
                and reserved == balance.reserved
                and balance.available >= 0
                and balance.reserved >= 0
            )
            if not ok:
                logger.error(
                    f"Ledger mismatch for {account_id}/{balance.asset}: materialized "
                    f"{balance.available}/{balance.reserved}, log {available}/{reserved}"
                )
            consistent = consistent and ok
            assets.append({
                "asset": balance.asset,
                "available": balance.available,
                "reserved": balance.reserved,
                "ledger_available": available,
                "ledger_reserved": reserved,
                "version": balance.version,
                "consistent": ok,
            })
        return {"account_id": account_id, "consistent": consistent, "assets": assets}
