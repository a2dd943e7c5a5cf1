"""
Per-asset/network policy table.

Every supported (asset, network) pair carries the confirmation depth a
deposit or withdrawal needs, how long a deposit intent stays open, withdrawal
fees and limits, and a USD reference rate used by the unified balance view.
"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from funds_ledger.exceptions import UnsupportedAssetError


@dataclass(frozen=True)
class AssetPolicy:
    asset: str
    network: str
    required_confirmations: int
    withdrawal_confirmations: int
    deposit_ttl: timedelta
    min_deposit_usd: Decimal
    min_withdrawal: Decimal
    network_fee: Decimal
    platform_fee_rate: Decimal = Decimal("0")
    min_reserve: Decimal = Decimal("0")
    memo_required: bool = False
    usd_rate: Decimal = Decimal("1")


class PolicyTable:
    """Lookup of AssetPolicy by (asset, network)."""

    def __init__(self, policies: Iterable[AssetPolicy]):
        self._policies: Dict[Tuple[str, str], AssetPolicy] = {}
        for policy in policies:
            self._policies[(policy.asset.upper(), policy.network.upper())] = policy

    def get(self, asset: str, network: str) -> AssetPolicy:
        policy = self._policies.get((asset.upper(), network.upper()))
        if policy is None:
            raise UnsupportedAssetError(asset, network)
        return policy

    def usd_rate(self, asset: str) -> Optional[Decimal]:
        for (policy_asset, _), policy in self._policies.items():
            if policy_asset == asset.upper():
                return policy.usd_rate
        return None

    def supported_assets(self) -> List[dict]:
        grouped: Dict[str, dict] = {}
        for policy in self._policies.values():
            entry = grouped.setdefault(policy.asset, {
                "asset": policy.asset,
                "networks": [],
                "memo_required": False,
                "min_deposit_usd": policy.min_deposit_usd,
            })
            entry["networks"].append(policy.network)
            entry["memo_required"] = entry["memo_required"] or policy.memo_required
        return list(grouped.values())


# Confirmation depths follow the deposit page defaults (USDT/TRC20 settles
# after 2 confirmations); fees are flat network estimates in asset units.
DEFAULT_POLICIES = PolicyTable([
    AssetPolicy(
        asset="USDT", network="TRC20",
        required_confirmations=2, withdrawal_confirmations=2,
        deposit_ttl=timedelta(minutes=60),
        min_deposit_usd=Decimal("10"), min_withdrawal=Decimal("10"),
        network_fee=Decimal("1"),
    ),
    AssetPolicy(
        asset="USDC", network="ETHEREUM",
        required_confirmations=12, withdrawal_confirmations=12,
        deposit_ttl=timedelta(minutes=60),
        min_deposit_usd=Decimal("10"), min_withdrawal=Decimal("10"),
        network_fee=Decimal("5"),
    ),
    AssetPolicy(
        asset="USDC", network="POLYGON",
        required_confirmations=64, withdrawal_confirmations=64,
        deposit_ttl=timedelta(minutes=60),
        min_deposit_usd=Decimal("10"), min_withdrawal=Decimal("10"),
        network_fee=Decimal("0.5"),
    ),
    AssetPolicy(
        asset="USDC", network="BSC",
        required_confirmations=15, withdrawal_confirmations=15,
        deposit_ttl=timedelta(minutes=60),
        min_deposit_usd=Decimal("10"), min_withdrawal=Decimal("10"),
        network_fee=Decimal("0.5"),
    ),
    AssetPolicy(
        asset="BNB", network="BSC",
        required_confirmations=15, withdrawal_confirmations=15,
        deposit_ttl=timedelta(minutes=60),
        min_deposit_usd=Decimal("5"), min_withdrawal=Decimal("0.01"),
        network_fee=Decimal("0.0005"), usd_rate=Decimal("600"),
    ),
    AssetPolicy(
        asset="TRX", network="TRC20",
        required_confirmations=2, withdrawal_confirmations=2,
        deposit_ttl=timedelta(minutes=60),
        min_deposit_usd=Decimal("1"), min_withdrawal=Decimal("1"),
        network_fee=Decimal("1"), usd_rate=Decimal("0.12"),
    ),
    AssetPolicy(
        asset="BTC", network="BITCOIN",
        required_confirmations=3, withdrawal_confirmations=3,
        deposit_ttl=timedelta(hours=3),
        min_deposit_usd=Decimal("1"), min_withdrawal=Decimal("0.0001"),
        network_fee=Decimal("0.00005"), usd_rate=Decimal("60000"),
    ),
])
