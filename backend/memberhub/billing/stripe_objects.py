"""Helpers for reading loosely-shaped Stripe payloads.

Webhook payloads differ across API versions: subscription ids and metadata
moved under ``parent.subscription_details`` on invoices, and billing periods
moved from the subscription onto its items. These helpers look in every
known location and never raise on a missing field.
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any


def field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a StripeObject, dict or attribute bag."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        value = obj.get(name, default)
    else:
        value = getattr(obj, name, default)
    return default if value is None else value


def object_id(value: Any) -> str | None:
    """An id field may be a bare string or an expanded object."""
    if value is None or isinstance(value, str):
        return value or None
    return field(value, "id")


def ts_to_naive(ts: Any) -> datetime | None:
    """Convert a Stripe Unix timestamp to naive UTC; None if not numeric."""
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def first_line(invoice: Any) -> Any:
    lines = field(invoice, "lines")
    data = field(lines, "data") or []
    return data[0] if data else None


def first_item(stripe_sub: Any) -> Any:
    """First subscription item, read by key to avoid ``dict.items``."""
    if isinstance(stripe_sub, Mapping):
        items = stripe_sub.get("items")
    else:
        items = getattr(stripe_sub, "items", None)
    data = field(items, "data") or []
    return data[0] if data else None


def collect_metadata(obj: Any) -> dict[str, str]:
    """Merge metadata from every shape Stripe uses; earlier sources win."""
    line = first_line(obj)
    sources = [
        field(obj, "metadata"),
        field(field(obj, "subscription_details"), "metadata"),
        field(field(field(obj, "parent"), "subscription_details"), "metadata"),
        field(line, "metadata"),
    ]
    merged: dict[str, str] = {}
    for source in sources:
        if not source:
            continue
        for key, value in dict(source).items():
            if value not in (None, "") and key not in merged:
                merged[key] = str(value)
    return merged


def invoice_subscription_id(invoice: Any) -> str | None:
    """External subscription id of an invoice, wherever the API put it."""
    direct = object_id(field(invoice, "subscription"))
    if direct:
        return direct
    details = field(field(invoice, "parent"), "subscription_details")
    nested = object_id(field(details, "subscription"))
    if nested:
        return nested
    line = first_line(invoice)
    return object_id(field(line, "subscription")) or object_id(
        field(field(field(line, "parent"), "subscription_item_details"), "subscription")
    )


def invoice_period(invoice: Any) -> tuple[datetime | None, datetime | None]:
    """Service period of an invoice: first line's period, then the invoice's own."""
    period = field(first_line(invoice), "period")
    start = ts_to_naive(field(period, "start"))
    end = ts_to_naive(field(period, "end"))
    if start is None or end is None:
        start = start or ts_to_naive(field(invoice, "period_start"))
        end = end or ts_to_naive(field(invoice, "period_end"))
    return start, end


def subscription_period(stripe_sub: Any) -> tuple[datetime | None, datetime | None]:
    """Current period of a subscription: item fields first, then top-level."""
    item = first_item(stripe_sub)
    start = ts_to_naive(field(item, "current_period_start"))
    end = ts_to_naive(field(item, "current_period_end"))
    return (
        start or ts_to_naive(field(stripe_sub, "current_period_start")),
        end or ts_to_naive(field(stripe_sub, "current_period_end")),
    )


def invoice_payment_intent_id(invoice: Any) -> str | None:
    """PaymentIntent behind an invoice (older and newer payload shapes)."""
    direct = object_id(field(invoice, "payment_intent"))
    if direct:
        return direct
    payments = field(field(invoice, "payments"), "data") or []
    for entry in payments:
        pi = object_id(field(field(entry, "payment"), "payment_intent"))
        if pi:
            return pi
    return None
