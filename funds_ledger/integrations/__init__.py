"""
Interfaces to the collaborators the ledger consumes but does not own:
deposit address provisioning and the blockchain watcher.
"""
from funds_ledger.integrations.base import (
    AddressProvider,
    AllocatedAddress,
    ChainObservation,
    ChainWatcher,
)
from funds_ledger.integrations.http_clients import HttpAddressProvider, HttpChainWatcher

__all__ = [
    "AddressProvider",
    "AllocatedAddress",
    "ChainObservation",
    "ChainWatcher",
    "HttpAddressProvider",
    "HttpChainWatcher",
]
