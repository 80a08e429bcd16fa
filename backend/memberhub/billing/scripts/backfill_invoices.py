"""Import paid Stripe invoices that reconciliation missed.

Run inside the backend container:
    python -m memberhub.billing.scripts.backfill_invoices --days 30
    python -m memberhub.billing.scripts.backfill_invoices --since 2026-04-01 --customer cus_123

Notifications are not sent for backfilled invoices.
"""

import argparse
import asyncio
import logging
from datetime import datetime, timedelta

from memberhub.billing.backfill import backfill_paid_invoices
from memberhub.config import settings
from memberhub.database import async_session_factory, engine, utcnow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    window = parser.add_mutually_exclusive_group()
    window.add_argument("--since", type=datetime.fromisoformat, help="ISO date to scan from")
    window.add_argument("--days", type=int, default=30, help="Scan the last N days (default 30)")
    parser.add_argument("--customer", action="append", dest="customers", help="Limit to a Stripe customer id")
    return parser.parse_args()


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    args = _parse_args()
    since = args.since or utcnow() - timedelta(days=args.days)

    async with async_session_factory() as session:
        report = await backfill_paid_invoices(session, since, customer_ids=args.customers)
        await session.commit()
    await engine.dispose()

    print(f"Examined:            {report.examined}")
    print(f"Imported:            {report.imported}")
    print(f"Payments backfilled: {report.payments_backfilled}")
    print(f"Already recorded:    {report.skipped_existing}")
    print(f"Ignored:             {report.ignored}")
    for failure in report.failures:
        print(f"  FAILED {failure['invoice_id']}: {failure['error']}")


if __name__ == "__main__":
    asyncio.run(main())
