import pytest
import uuid
from decimal import Decimal
from httpx import AsyncClient

from funds_ledger.core.config import settings

ADMIN_HEADERS = {"X-Admin-Token": settings.ADMIN_TOKEN}

def as_account(account_id: str) -> dict:
    return {"X-Account-Id": account_id}

async def fund_via_gateway(client: AsyncClient, account_id: str, amount: str, asset: str = "USDT"):
    resp = await client.post("/api/payments/callback", headers=ADMIN_HEADERS, json={
        "account_id": account_id,
        "asset": asset,
        "amount": amount,
        "gateway_transaction_id": f"pi_{uuid.uuid4().hex}",
    })
    assert resp.status_code == 200
    return resp.json()

@pytest.mark.asyncio
async def test_requires_account_identity(client: AsyncClient):
    resp = await client.get("/api/wallet/balance")
    assert resp.status_code == 401

@pytest.mark.asyncio
async def test_supported_assets(client: AsyncClient):
    resp = await client.get("/api/deposits/supported-assets")
    assert resp.status_code == 200
    assets = {a["asset"]: a for a in resp.json()}
    assert "TRC20" in assets["USDT"]["networks"]
    assert set(assets["USDC"]["networks"]) == {"ETHEREUM", "POLYGON", "BSC"}

@pytest.mark.asyncio
async def test_deposit_initiate_and_lookup(client: AsyncClient):
    resp = await client.post("/api/deposits/initiate", headers=as_account("alice"), json={
        "asset": "usdt", "network": "trc20", "amount_usd": 50,
    })
    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "pending"
    assert data["asset"] == "USDT"
    assert data["required_confirmations"] == 2
    assert data["address"]

    resp = await client.get(f"/api/deposits/{data['id']}", headers=as_account("alice"))
    assert resp.status_code == 200
    resp = await client.get(f"/api/deposits/{data['id']}", headers=as_account("mallory"))
    assert resp.status_code == 404

    resp = await client.get("/api/deposits/history", headers=as_account("alice"))
    assert [d["id"] for d in resp.json()] == [data["id"]]

@pytest.mark.asyncio
async def test_deposit_unsupported_asset(client: AsyncClient):
    resp = await client.post("/api/deposits/initiate", headers=as_account("alice"), json={
        "asset": "DOGE", "network": "DOGECOIN", "amount_usd": 50,
    })
    assert resp.status_code == 400
    assert "Unsupported" in resp.json()["detail"]

@pytest.mark.asyncio
async def test_gateway_callback_is_admin_only_and_idempotent(client: AsyncClient):
    body = {"account_id": "bob", "amount": "100", "gateway_transaction_id": "pi_abc"}

    resp = await client.post("/api/payments/callback", json=body)
    assert resp.status_code == 403

    first = await client.post("/api/payments/callback", headers=ADMIN_HEADERS, json=body)
    second = await client.post("/api/payments/callback", headers=ADMIN_HEADERS, json=body)
    assert first.status_code == 200
    assert second.json()["id"] == first.json()["id"]

    resp = await client.get("/api/wallet/balance", params={"asset": "USD"}, headers=as_account("bob"))
    assert Decimal(resp.json()["available"]) == Decimal("100")

@pytest.mark.asyncio
async def test_bet_flow(client: AsyncClient):
    await fund_via_gateway(client, "carol", "100")

    resp = await client.post("/api/bets/place", headers=as_account("carol"), json={
        "match_id": 4711, "market_key": "1x2", "selection_key": "away", "odds_decimal": "2.0", "stake": "40",
    })
    assert resp.status_code == 201
    bet = resp.json()
    assert Decimal(bet["potential_payout"]) == Decimal("80")

    resp = await client.get("/api/wallet/balance", headers=as_account("carol"))
    assert Decimal(resp.json()["available"]) == Decimal("60")
    assert Decimal(resp.json()["reserved"]) == Decimal("40")

    settle = {"outcome": "WIN", "expected_settle_version": 0}
    resp = await client.post(f"/api/admin/bets/{bet['id']}/settle", json=settle)
    assert resp.status_code == 403
    resp = await client.post(f"/api/admin/bets/{bet['id']}/settle", headers=ADMIN_HEADERS, json=settle)
    assert resp.status_code == 200
    assert resp.json()["status"] == "won"
    # replayed settlement message
    resp = await client.post(f"/api/admin/bets/{bet['id']}/settle", headers=ADMIN_HEADERS, json=settle)
    assert resp.json()["settle_version"] == 1

    resp = await client.get("/api/wallet/balance", headers=as_account("carol"))
    assert Decimal(resp.json()["available"]) == Decimal("140")

    resp = await client.post(f"/api/bets/{bet['id']}/cancel", headers=as_account("carol"))
    assert resp.status_code == 409

    resp = await client.get("/api/bets", headers=as_account("carol"))
    assert resp.json()["total"] == 1

@pytest.mark.asyncio
async def test_withdrawal_flow(client: AsyncClient):
    await fund_via_gateway(client, "dave", "100")
    body = {"amount_crypto": "30", "to_address": "TDaveAddr", "client_request_id": "w-1"}

    first = await client.post("/api/withdrawals/initiate", headers=as_account("dave"), json=body)
    assert first.status_code == 201
    second = await client.post("/api/withdrawals/initiate", headers=as_account("dave"), json=body)
    assert second.json()["id"] == first.json()["id"]

    resp = await client.post("/api/withdrawals/initiate", headers=as_account("dave"),
                             json={**body, "amount_crypto": "31"})
    assert resp.status_code == 409

    resp = await client.get("/api/withdrawals", headers=as_account("dave"))
    assert resp.json()["total"] == 1

    withdrawal_id = first.json()["id"]
    resp = await client.post(f"/api/withdrawals/{withdrawal_id}/cancel", headers=as_account("dave"))
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    resp = await client.get("/api/wallet/balance", headers=as_account("dave"))
    assert Decimal(resp.json()["available"]) == Decimal("100")
    assert Decimal(resp.json()["reserved"]) == Decimal("0")

@pytest.mark.asyncio
async def test_withdrawal_admin_path(client: AsyncClient):
    await fund_via_gateway(client, "erin", "100")
    resp = await client.post("/api/withdrawals/initiate", headers=as_account("erin"), json={
        "amount_crypto": "50", "to_address": "TErinAddr", "client_request_id": "w-2",
    })
    withdrawal_id = resp.json()["id"]

    resp = await client.post(f"/api/admin/withdrawals/{withdrawal_id}/processing", headers=ADMIN_HEADERS,
                             json={"tx_hash": "tx-early"})
    assert resp.status_code == 409

    resp = await client.post(f"/api/admin/withdrawals/{withdrawal_id}/approve", headers=ADMIN_HEADERS)
    assert resp.json()["status"] == "approved"
    resp = await client.post(f"/api/admin/withdrawals/{withdrawal_id}/reject", headers=ADMIN_HEADERS,
                             json={"rejection_reason": "manual review failed"})
    assert resp.json()["status"] == "rejected"

    resp = await client.get("/api/wallet/balance", headers=as_account("erin"))
    assert Decimal(resp.json()["available"]) == Decimal("100")

@pytest.mark.asyncio
async def test_insufficient_balance_withdrawal(client: AsyncClient):
    await fund_via_gateway(client, "frank", "10")
    resp = await client.post("/api/withdrawals/initiate", headers=as_account("frank"), json={
        "amount_crypto": "10", "to_address": "TFrank", "client_request_id": "w-3",
    })
    assert resp.status_code == 400

@pytest.mark.asyncio
async def test_wallet_views_and_reconciliation(client: AsyncClient):
    await fund_via_gateway(client, "gina", "100")
    await fund_via_gateway(client, "gina", "0.5", asset="BNB")
    await client.post("/api/bets/place", headers=as_account("gina"), json={
        "match_id": "m-1", "market_key": "ou", "selection_key": "over", "odds_decimal": "1.9", "stake": "10",
    })

    resp = await client.get("/api/wallet/total-balance", headers=as_account("gina"))
    data = resp.json()
    assert Decimal(data["total_balance_usd"]) == Decimal("400")
    assert Decimal(data["total_reserved_usd"]) == Decimal("10")

    resp = await client.get("/api/wallet/transactions", params={"asset": "usdt"}, headers=as_account("gina"))
    assert [e["reason"] for e in resp.json()] == ["deposit", "bet_hold"]

    resp = await client.get("/api/admin/reconciliation/gina", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["consistent"] is True

@pytest.mark.asyncio
async def test_gateway_reference_reused_for_other_account(client: AsyncClient):
    body = {"account_id": "hank", "amount": "25", "gateway_transaction_id": "pi_shared"}
    resp = await client.post("/api/payments/callback", headers=ADMIN_HEADERS, json=body)
    assert resp.status_code == 200

    resp = await client.post("/api/payments/callback", headers=ADMIN_HEADERS, json={**body, "account_id": "iris"})
    assert resp.status_code == 409

    resp = await client.get("/api/wallet/balance", params={"asset": "USD"}, headers=as_account("iris"))
    assert Decimal(resp.json()["available"]) == Decimal("0")

@pytest.mark.asyncio
async def test_admin_withdrawal_queue(client: AsyncClient):
    await fund_via_gateway(client, "jack", "100")
    await fund_via_gateway(client, "kate", "100")
    for account_id in ("jack", "kate"):
        resp = await client.post("/api/withdrawals/initiate", headers=as_account(account_id), json={
            "amount_crypto": "20", "to_address": f"T{account_id}", "client_request_id": "q-1",
        })
        assert resp.status_code == 201
    await client.post(f"/api/withdrawals/{resp.json()['id']}/cancel", headers=as_account("kate"))

    resp = await client.get("/api/admin/withdrawals")
    assert resp.status_code == 403

    resp = await client.get("/api/admin/withdrawals", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["total"] == 2

    resp = await client.get("/api/admin/withdrawals", headers=ADMIN_HEADERS, params={"status_filter": "pending"})
    data = resp.json()
    assert data["total"] == 1
    assert data["withdrawals"][0]["account_id"] == "jack"

    resp = await client.get("/api/admin/withdrawals", headers=ADMIN_HEADERS, params={"user_id": "kate"})
    assert [w["status"] for w in resp.json()["withdrawals"]] == ["cancelled"]

    resp = await client.get("/api/admin/withdrawals", headers=ADMIN_HEADERS,
                            params={"date_to": "2000-01-01T00:00:00Z"})
    assert resp.json()["total"] == 0

    resp = await client.get("/api/admin/withdrawals", headers=ADMIN_HEADERS, params={"skip": 1, "limit": 1})
    assert resp.json()["total"] == 2
    assert len(resp.json()["withdrawals"]) == 1

@pytest.mark.asyncio
async def test_admin_transactions(client: AsyncClient):
    await fund_via_gateway(client, "liam", "30")
    await fund_via_gateway(client, "mona", "40")

    resp = await client.get("/api/admin/transactions")
    assert resp.status_code == 403

    resp = await client.get("/api/admin/transactions", headers=ADMIN_HEADERS, params={"reason": "deposit"})
    assert resp.status_code == 200
    assert resp.json()["total"] == 2
    assert {t["account_id"] for t in resp.json()["transactions"]} == {"liam", "mona"}

    resp = await client.get("/api/admin/transactions", headers=ADMIN_HEADERS, params={"user_id": "mona"})
    transactions = resp.json()["transactions"]
    assert len(transactions) == 1
    assert Decimal(transactions[0]["delta"]) == Decimal("40")
