
import asyncio
import os
import uuid
import httpx

BASE_URL = "http://localhost:8000/api"
ADMIN = {"X-Admin-Token": os.environ.get("ADMIN_TOKEN", "change-me")}

async def main():
    account = f"smoke-{uuid.uuid4().hex[:8]}"
    me = {"X-Account-Id": account}

    async with httpx.AsyncClient() as client:
        print(f"Funding {account} with 100 USDT via gateway callback...")
        callback = {
            "account_id": account,
            "asset": "USDT",
            "amount": "100",
            "gateway_transaction_id": f"pi_{uuid.uuid4().hex}",
        }
        resp = await client.post(f"{BASE_URL}/payments/callback", json=callback, headers=ADMIN)
        print(resp.json())
        assert resp.status_code == 200

        print("\nReplaying the same callback (must not credit twice)...")
        resp = await client.post(f"{BASE_URL}/payments/callback", json=callback, headers=ADMIN)
        print(resp.json())

        print("\nPlacing a 40 USDT bet at 2.0...")
        resp = await client.post(f"{BASE_URL}/bets/place", headers=me, json={
            "match_id": "smoke-match",
            "market_key": "1x2",
            "selection_key": "home",
            "odds_decimal": "2.0",
            "stake": "40",
        })
        print(resp.json())
        bet = resp.json()
        assert resp.status_code == 201

        print("\nSettling the bet as WIN...")
        resp = await client.post(f"{BASE_URL}/admin/bets/{bet['id']}/settle", headers=ADMIN,
                                 json={"outcome": "WIN", "expected_settle_version": 0})
        print(resp.json())

        print("\nRequesting a 30 USDT withdrawal...")
        resp = await client.post(f"{BASE_URL}/withdrawals/initiate", headers=me, json={
            "asset": "USDT",
            "network": "TRC20",
            "amount_crypto": "30",
            "to_address": "TXYZ1234567890abcdefghijklmnopqrs",
            "client_request_id": f"smoke-{uuid.uuid4().hex}",
        })
        print(resp.json())
        withdrawal = resp.json()

        print("\nCancelling the withdrawal...")
        resp = await client.post(f"{BASE_URL}/withdrawals/{withdrawal['id']}/cancel", headers=me)
        print(resp.json())

        print("\nFinal Balance:")
        resp = await client.get(f"{BASE_URL}/wallet/balance", params={"asset": "USDT"}, headers=me)
        print(resp.json())

        print("\nReconciliation:")
        resp = await client.get(f"{BASE_URL}/admin/reconciliation/{account}", headers=ADMIN)
        print(resp.json())
        assert resp.json()["consistent"]

if __name__ == "__main__":
    asyncio.run(main())
