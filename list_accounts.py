import asyncio
from funds_ledger.db.session import AsyncSessionLocal
from funds_ledger.models import AssetBalance
from funds_ledger.services.wallet import WalletService
from sqlalchemy import select

async def list_accounts():
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(AssetBalance.account_id).distinct().order_by(AssetBalance.account_id))
        account_ids = result.scalars().all()
        service = WalletService(db)
        with open("results.txt", "w") as f:
            f.write("\n--- ACCOUNT BALANCES ---\n")
            for account_id in account_ids:
                report = await service.reconciliation_report(account_id)
                flag = "ok" if report["consistent"] else "MISMATCH"
                f.write(f"Account: {account_id:20} [{flag}]\n")
                for asset in report["assets"]:
                    f.write(
                        f"    {asset['asset']:6} available {asset['available']} "
                        f"reserved {asset['reserved']} (v{asset['version']})\n"
                    )
            f.write("------------------------\n")

if __name__ == "__main__":
    asyncio.run(list_accounts())
