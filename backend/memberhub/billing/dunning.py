"""Dunning state — the suspension flag and decline-reason enrichment."""

import logging
import uuid
from typing import Any

import stripe
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.billing import stripe_client
from memberhub.billing.stripe_objects import field, invoice_payment_intent_id, object_id
from memberhub.database import insert_ignoring_conflict, utcnow
from memberhub.models.system_setting import SystemSetting

logger = logging.getLogger(__name__)

DUNNING_CATEGORY = "dunning"
GENERIC_DECLINE = "Payment declined"

DECLINE_REASONS: dict[str, str] = {
    "insufficient_funds": "Insufficient funds",
    "card_declined": "Card declined by bank",
    "generic_decline": "Card declined by bank",
    "expired_card": "Card expired",
    "incorrect_cvc": "Incorrect security code (CVC)",
    "invalid_cvc": "Incorrect security code (CVC)",
    "incorrect_number": "Incorrect card number",
    "invalid_number": "Incorrect card number",
    "authentication_required": "Authentication required (3D Secure)",
    "do_not_honor": "Declined by card issuer",
    "issuer_not_available": "Declined by card issuer",
}


def dunning_flag_key(subscription_id: uuid.UUID) -> str:
    return f"dunning_suspended:{subscription_id}"


async def is_dunning_suspended(db: AsyncSession, subscription_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(SystemSetting.id).where(SystemSetting.key == dunning_flag_key(subscription_id))
    )
    return result.scalar_one_or_none() is not None


async def set_dunning_flag(db: AsyncSession, subscription_id: uuid.UUID, invoice_id: str | None) -> bool:
    """Mark a subscription as suspended for non-payment. Idempotent."""
    created = await insert_ignoring_conflict(
        db,
        SystemSetting,
        {
            "key": dunning_flag_key(subscription_id),
            "value": invoice_id or "",
            "category": DUNNING_CATEGORY,
            "description": f"Suspended after repeated payment failures at {utcnow().isoformat()}",
        },
        conflict_column="key",
    )
    if created:
        logger.info("Dunning flag set for subscription %s (invoice %s)", subscription_id, invoice_id)
    return created


async def clear_dunning_flag(db: AsyncSession, subscription_id: uuid.UUID) -> bool:
    """Remove the suspension flag. Returns True if one was present."""
    result = await db.execute(
        delete(SystemSetting).where(SystemSetting.key == dunning_flag_key(subscription_id))
    )
    cleared = bool(result.rowcount)
    if cleared:
        logger.info("Dunning flag cleared for subscription %s", subscription_id)
    return cleared


def describe_decline(decline_code: str | None, raw_message: str | None = None) -> str:
    """Human-readable decline reason: lookup table, then raw message, then generic."""
    if decline_code and decline_code in DECLINE_REASONS:
        return DECLINE_REASONS[decline_code]
    if raw_message:
        return raw_message
    return GENERIC_DECLINE


def _charge_decline(charge: Any) -> tuple[str | None, str | None]:
    outcome = field(charge, "outcome")
    code = field(charge, "failure_code") or field(outcome, "reason")
    message = field(charge, "failure_message") or field(outcome, "seller_message")
    return code, message


async def enrich_decline_reason(invoice: Any) -> str:
    """Best-effort decline reason for a failed invoice. Never raises."""
    try:
        charge = field(invoice, "charge")
        if isinstance(charge, str):
            charge = await stripe_client.get_charge(charge)

        code = message = None
        if charge is not None:
            code, message = _charge_decline(charge)

        if not code:
            pi_id = invoice_payment_intent_id(invoice)
            if pi_id:
                intent = await stripe_client.get_payment_intent(pi_id)
                error = field(intent, "last_payment_error")
                code = field(error, "decline_code") or field(error, "code")
                message = message or field(error, "message")
                latest = field(intent, "latest_charge")
                if not code and latest is not None and object_id(latest) and not isinstance(latest, str):
                    code, message = _charge_decline(latest)

        return describe_decline(code, message)
    except stripe.StripeError as exc:
        logger.warning("Decline enrichment failed for invoice %s: %s", field(invoice, "id"), exc)
    except Exception:
        logger.exception("Unexpected error enriching decline for invoice %s", field(invoice, "id"))
    return describe_decline(None, field(field(invoice, "last_finalization_error"), "message"))
