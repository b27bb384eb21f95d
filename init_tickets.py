import asyncio

from runpass.config import get_settings
from runpass.helpers import now_ts
from runpass.infra.sql import make_async_engine, run_tx
from runpass.model import inventory
from runpass.model.orm import create_schema

DAY = 24 * 3600

# Config
TICKETS = [
    # name, unit price (IDR), stock, days on sale from now
    ("Fun Run 5K", 150_000, 500, 30),
    ("Fun Run 10K", 200_000, 300, 30),
    ("Half Marathon 21K", 350_000, 200, 30),
    ("Kids Run 1K", 75_000, 100, 30),
    ("Virtual Run", 100_000, 1_000, 60),
]


async def create_tickets(SessionAsync, gated):
    now = now_ts()

    async def _seed(db):
        existing = await inventory.inventory(db)
        names = {t["name"] for t in existing.values()}
        created = 0
        for name, price, stock, days in TICKETS:
            if name in names:
                continue
            await inventory.create_ticket(
                db, name=name, unit_price=price, stock=stock,
                sale_start=now - 7 * DAY, sale_end=now + days * DAY,
            )
            created += 1
        return created

    created = await run_tx(SessionAsync, gated, _seed)
    print(f'✅ {created} tickets created')


async def main():
    engine, SessionAsync, gated = make_async_engine(get_settings())
    try:
        await create_schema(engine)
        print('✅ schema ready')
        await create_tickets(SessionAsync, gated)
    finally:
        await engine.dispose()


if __name__ == '__main__':
    asyncio.run(main())
