"""Backfill paid invoices from Stripe that reconciliation never recorded.

Replays :func:`record_paid_invoice`, the same code the live webhook uses,
so offline repair and online handling cannot disagree about an invoice.
"""

import logging
from dataclasses import dataclass, field as dc_field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.billing import stripe_client
from memberhub.billing.notifications import Notifier
from memberhub.billing.states import PaymentStatus
from memberhub.billing.stripe_objects import field
from memberhub.billing.webhooks import (
    CREATED,
    DUPLICATE,
    IGNORED,
    PAYMENT_BACKFILLED,
    get_payment_for_invoice,
    record_paid_invoice,
)
from memberhub.exceptions import SubscriptionMappingError

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    examined: int = 0
    imported: int = 0
    payments_backfilled: int = 0
    skipped_existing: int = 0
    ignored: int = 0
    failures: list[dict[str, Any]] = dc_field(default_factory=list)


async def backfill_paid_invoices(
    db: AsyncSession,
    since: datetime,
    customer_ids: list[str] | None = None,
    notifier: Notifier | None = None,
) -> BackfillReport:
    """Import every paid invoice created since ``since`` that has no Payment row.

    Unmappable invoices are collected in ``report.failures`` instead of
    aborting the run.
    """
    report = BackfillReport()
    targets: list[str | None] = list(customer_ids) if customer_ids else [None]

    for customer_id in targets:
        async for invoice in stripe_client.list_paid_invoices(since, customer_id=customer_id):
            report.examined += 1
            invoice_id = field(invoice, "id")

            existing = await get_payment_for_invoice(db, invoice_id)
            if existing is not None and existing.status == PaymentStatus.CONFIRMED.value:
                report.skipped_existing += 1
                continue

            try:
                outcome = await record_paid_invoice(
                    db, invoice, event_type="backfill", notifier=notifier
                )
            except SubscriptionMappingError as exc:
                report.failures.append(
                    {
                        "invoice_id": invoice_id,
                        "customer_id": exc.customer_id,
                        "subscription_id": exc.subscription_id,
                        "error": str(exc),
                    }
                )
                continue

            if outcome == CREATED:
                report.imported += 1
            elif outcome == PAYMENT_BACKFILLED:
                report.payments_backfilled += 1
            elif outcome == DUPLICATE:
                report.skipped_existing += 1
            elif outcome == IGNORED:
                report.ignored += 1

    logger.info(
        "Backfill since %s: examined=%d imported=%d backfilled=%d skipped=%d failures=%d",
        since.isoformat(),
        report.examined,
        report.imported,
        report.payments_backfilled,
        report.skipped_existing,
        len(report.failures),
    )
    return report
