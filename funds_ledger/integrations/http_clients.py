from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
import logging

import httpx

from funds_ledger.core.config import settings
from funds_ledger.exceptions import ExternalCollaboratorError
from funds_ledger.integrations.base import AllocatedAddress, ChainObservation

logger = logging.getLogger(__name__)


class _JsonClient:
    """Shared plumbing: one httpx client, errors mapped to ExternalCollaboratorError."""

    service_name = "collaborator"

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.HTTP_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning(f"{self.service_name} request failed: {method} {url}: {exc}")
            raise ExternalCollaboratorError(f"{self.service_name} unreachable") from exc

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.warning(f"{self.service_name} returned {response.status_code} for {method} {url}")
            raise ExternalCollaboratorError(f"{self.service_name} error {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            logger.warning(f"{self.service_name} returned a non-JSON body for {method} {url}")
            raise ExternalCollaboratorError(f"{self.service_name} returned an unreadable response") from exc


class HttpAddressProvider(_JsonClient):
    service_name = "address provider"

    async def allocate_address(self, account_id: str, asset: str, network: str) -> AllocatedAddress:
        data = await self._request("POST", "/addresses", json={
            "account_id": account_id,
            "asset": asset,
            "network": network,
        })
        if not data or not data.get("address"):
            raise ExternalCollaboratorError("address provider returned no address")
        return AllocatedAddress(address=data["address"], memo=data.get("memo"))


class HttpChainWatcher(_JsonClient):
    service_name = "chain watcher"

    async def get_address_activity(self, asset: str, network: str, address: str) -> Optional[ChainObservation]:
        data = await self._request("GET", f"/addresses/{network}/{address}", params={"asset": asset})
        return self._observation(data)

    async def get_transaction(self, network: str, tx_hash: str) -> Optional[ChainObservation]:
        data = await self._request("GET", f"/transactions/{network}/{tx_hash}")
        return self._observation(data)

    @staticmethod
    def _observation(data: Optional[Dict[str, Any]]) -> Optional[ChainObservation]:
        if not data:
            return None
        try:
            if not data.get("tx_hash"):
                return None
            return ChainObservation(
                tx_hash=data["tx_hash"],
                confirmations=int(data.get("confirmations", 0)),
                amount=Decimal(str(data.get("amount", "0"))),
                failed=bool(data.get("failed", False)),
            )
        except (AttributeError, KeyError, TypeError, ValueError, InvalidOperation) as exc:
            logger.warning(f"Malformed chain watcher payload: {data!r}")
            raise ExternalCollaboratorError("chain watcher returned a malformed payload") from exc
