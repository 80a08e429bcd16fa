"""Record today's VAT position of every entity (run daily from cron).

    docker compose exec backend python -m scripts.record_vat_snapshot
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from memberhub.database import async_session_factory, engine
from memberhub.routing.vat import record_vat_snapshot

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def main() -> None:
    async with async_session_factory() as session:
        rows = await record_vat_snapshot(session)
        await session.commit()
    await engine.dispose()

    for row in rows:
        print(f"   {row.entity_id}: £{row.total_revenue:,.2f} ({row.risk_level})")
    print(f"✅ Recorded {len(rows)} VAT calculations")


if __name__ == "__main__":
    asyncio.run(main())
