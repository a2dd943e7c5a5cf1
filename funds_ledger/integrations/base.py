from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol


@dataclass(frozen=True)
class AllocatedAddress:
    address: str
    memo: Optional[str] = None


@dataclass(frozen=True)
class ChainObservation:
    """What the chain watcher last saw for an address or transaction."""
    tx_hash: str
    confirmations: int
    amount: Decimal
    failed: bool = False


class AddressProvider(Protocol):
    async def allocate_address(self, account_id: str, asset: str, network: str) -> AllocatedAddress:
        ...


class ChainWatcher(Protocol):
    async def get_address_activity(self, asset: str, network: str, address: str) -> Optional[ChainObservation]:
        ...

    async def get_transaction(self, network: str, tx_hash: str) -> Optional[ChainObservation]:
        ...
