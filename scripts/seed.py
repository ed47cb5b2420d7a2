"""Seed the credit bundle catalogue. Run with: python -m scripts.seed"""
import asyncio

from creditledger.db.session import async_session_factory
from creditledger.settlement.models import CreditBundle
from creditledger.settlement.service import DEFAULT_BUNDLES


async def main() -> None:
    async with async_session_factory() as db:
        for data in DEFAULT_BUNDLES:
            if await db.get(CreditBundle, data["id"]) is None:
                db.add(CreditBundle(active=True, **data))
                print(f"  Added: {data['id']} ({data['name']})")
            else:
                print(f"  Exists: {data['id']}")

        await db.commit()
    print("Seeding complete.")


if __name__ == "__main__":
    asyncio.run(main())
