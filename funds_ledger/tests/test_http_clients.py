import json
import pytest
from decimal import Decimal

import httpx

from funds_ledger.exceptions import ExternalCollaboratorError
from funds_ledger.integrations import HttpAddressProvider, HttpChainWatcher

def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))

@pytest.mark.asyncio
async def test_address_provider_allocates():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"address": "bnb136ns6lfw4zs5hg4n85vdthaad7hq5m4gtkgf23", "memo": "104"})

    provider = HttpAddressProvider("http://addresses.local/", client=mock_client(handler))
    allocated = await provider.allocate_address("alice", "BNB", "BSC")
    await provider.aclose()

    assert seen["url"] == "http://addresses.local/addresses"
    assert seen["body"] == {"account_id": "alice", "asset": "BNB", "network": "BSC"}
    assert allocated.memo == "104"

@pytest.mark.asyncio
async def test_address_provider_errors_are_collaborator_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    provider = HttpAddressProvider("http://addresses.local", client=mock_client(handler))
    with pytest.raises(ExternalCollaboratorError) as exc_info:
        await provider.allocate_address("alice", "USDT", "TRC20")
    assert exc_info.value.status_code == 503

@pytest.mark.asyncio
async def test_chain_watcher_reads_transaction():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/transactions/TRC20/tx-1"
        return httpx.Response(200, json={"tx_hash": "tx-1", "confirmations": 4, "amount": "19.5"})

    watcher = HttpChainWatcher("http://chain.local", client=mock_client(handler))
    observation = await watcher.get_transaction("TRC20", "tx-1")

    assert observation.confirmations == 4
    assert observation.amount == Decimal("19.5")
    assert observation.failed is False

@pytest.mark.asyncio
async def test_chain_watcher_nothing_seen():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/addresses"):
            assert request.url.params["asset"] == "USDT"
            return httpx.Response(200, json={})
        return httpx.Response(404)

    watcher = HttpChainWatcher("http://chain.local", client=mock_client(handler))
    assert await watcher.get_address_activity("USDT", "TRC20", "TAddr") is None
    assert await watcher.get_transaction("TRC20", "unknown") is None

@pytest.mark.asyncio
async def test_chain_watcher_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    watcher = HttpChainWatcher("http://chain.local", client=mock_client(handler))
    with pytest.raises(ExternalCollaboratorError):
        await watcher.get_transaction("TRC20", "tx-1")

@pytest.mark.asyncio
async def test_chain_watcher_non_json_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    watcher = HttpChainWatcher("http://chain.local", client=mock_client(handler))
    with pytest.raises(ExternalCollaboratorError):
        await watcher.get_address_activity("USDT", "TRC20", "TAddr")

@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"tx_hash": "tx-1", "confirmations": None},
    {"tx_hash": "tx-1", "confirmations": 3, "amount": "n/a"},
    ["tx-1", 3],
])
async def test_chain_watcher_malformed_payload(payload):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payload)

    watcher = HttpChainWatcher("http://chain.local", client=mock_client(handler))
    with pytest.raises(ExternalCollaboratorError) as exc_info:
        await watcher.get_transaction("TRC20", "tx-1")
    assert exc_info.value.status_code == 503
