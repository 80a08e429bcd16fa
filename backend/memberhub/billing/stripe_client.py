"""Async Stripe API wrapper for Memberhub.

All amounts cross this boundary in whole pounds; conversion to pence
happens here and nowhere else.
"""

import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe
from stripe import StripeClient

from memberhub.config import settings

logger = logging.getLogger(__name__)


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )


def to_pence(amount: float) -> int:
    """Convert whole pounds to integer pence, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_pence(amount: int | None) -> float:
    """Convert integer pence to whole pounds."""
    return (amount or 0) / 100


def to_timestamp(value: datetime) -> int:
    """Naive-UTC (or aware) datetime -> Unix timestamp."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


# -- Customers --------------------------------------------------------------


async def create_customer(
    email: str, name: str, user_id: str, phone: str | None = None
) -> stripe.Customer:
    """Create a Stripe customer linked to a Memberhub user."""
    client = get_stripe_client()
    logger.info("Creating Stripe customer for user %s (%s)", user_id, email)
    params: dict[str, Any] = {
        "email": email,
        "name": name,
        "metadata": {"userId": user_id},
    }
    if phone:
        params["phone"] = phone
    customer = await client.v1.customers.create_async(
        params=params,
        options={"idempotency_key": f"customer:{user_id}"},
    )
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer


async def get_customer(customer_id: str) -> stripe.Customer:
    """Retrieve a Stripe customer by ID."""
    client = get_stripe_client()
    return await client.v1.customers.retrieve_async(customer_id)


async def set_default_payment_method(customer_id: str, payment_method_id: str) -> stripe.Customer:
    """Make a payment method the customer's default for future invoices."""
    client = get_stripe_client()
    return await client.v1.customers.update_async(
        customer_id,
        params={"invoice_settings": {"default_payment_method": payment_method_id}},
    )


# -- SetupIntents -----------------------------------------------------------


async def create_setup_intent(
    customer_id: str, metadata: dict[str, str]
) -> stripe.SetupIntent:
    """Create an off-session SetupIntent to collect the member's card."""
    client = get_stripe_client()
    logger.info("Creating SetupIntent for customer %s", customer_id)
    return await client.v1.setup_intents.create_async(
        params={
            "customer": customer_id,
            "usage": "off_session",
            "payment_method_types": ["card"],
            "metadata": metadata,
        }
    )


async def get_setup_intent(setup_intent_id: str) -> stripe.SetupIntent:
    """Retrieve a SetupIntent by ID."""
    client = get_stripe_client()
    return await client.v1.setup_intents.retrieve_async(setup_intent_id)


# -- One-off invoices -------------------------------------------------------


async def create_invoice_item(
    customer_id: str,
    amount: float,
    description: str,
    metadata: dict[str, str],
    idempotency_key: str,
) -> stripe.InvoiceItem:
    """Add a pending invoice item (e.g. a prorated first period)."""
    client = get_stripe_client()
    return await client.v1.invoice_items.create_async(
        params={
            "customer": customer_id,
            "amount": to_pence(amount),
            "currency": settings.currency,
            "description": description,
            "metadata": metadata,
        },
        options={"idempotency_key": idempotency_key},
    )


async def create_invoice(
    customer_id: str, metadata: dict[str, str], idempotency_key: str
) -> stripe.Invoice:
    """Create an invoice that picks up the customer's pending items."""
    client = get_stripe_client()
    return await client.v1.invoices.create_async(
        params={
            "customer": customer_id,
            "collection_method": "charge_automatically",
            "pending_invoice_items_behavior": "include",
            "auto_advance": False,
            "metadata": metadata,
        },
        options={"idempotency_key": idempotency_key},
    )


async def pay_invoice(invoice_id: str, payment_method_id: str | None = None) -> stripe.Invoice:
    """Finalize and charge an invoice now. Declines raise ``stripe.CardError``."""
    client = get_stripe_client()
    params: dict[str, Any] = {}
    if payment_method_id:
        params["payment_method"] = payment_method_id
    logger.info("Paying invoice %s", invoice_id)
    return await client.v1.invoices.pay_async(invoice_id, params=params)


async def list_paid_invoices(
    since: datetime, customer_id: str | None = None
) -> AsyncIterator[stripe.Invoice]:
    """Yield every paid invoice created at or after ``since`` (auto-paginated)."""
    client = get_stripe_client()
    params: dict[str, Any] = {
        "status": "paid",
        "created": {"gte": to_timestamp(since)},
        "limit": 100,
    }
    if customer_id:
        params["customer"] = customer_id
    page = await client.v1.invoices.list_async(params=params)
    async for invoice in page.auto_paging_iter():
        yield invoice


async def find_invoice_by_metadata(customer_id: str, metadata: dict[str, str]) -> stripe.Invoice | None:
    """Most recent live (draft, open or paid) invoice of a customer carrying ``metadata``."""
    client = get_stripe_client()
    page = await client.v1.invoices.list_async(params={"customer": customer_id, "limit": 20})
    for invoice in page.data:
        if invoice.status not in ("draft", "open", "paid"):
            continue
        invoice_metadata = invoice.metadata or {}
        if all(invoice_metadata.get(key) == value for key, value in metadata.items()):
            return invoice
    return None


# -- Prices & subscriptions -------------------------------------------------


async def get_or_create_monthly_price(amount: float, product_name: str) -> str:
    """Reuse an active monthly price with the same amount, or create one.

    Matching by amount + interval avoids piling up duplicate catalog entries.
    """
    client = get_stripe_client()
    unit_amount = to_pence(amount)
    prices = await client.v1.prices.list_async(
        params={"active": True, "type": "recurring", "currency": settings.currency, "limit": 100}
    )
    for price in prices.data:
        recurring = price.recurring
        if price.unit_amount == unit_amount and recurring and recurring.interval == "month":
            return price.id

    logger.info("Creating monthly price %d for %s", unit_amount, product_name)
    product = await client.v1.products.create_async(
        params={
            "name": f"{product_name} Membership",
            "description": f"Monthly membership for {product_name}",
        }
    )
    price = await client.v1.prices.create_async(
        params={
            "unit_amount": unit_amount,
            "currency": settings.currency,
            "recurring": {"interval": "month"},
            "product": product.id,
        }
    )
    return price.id


async def create_subscription(
    customer_id: str,
    price_id: str,
    trial_end: datetime,
    payment_method_id: str | None,
    metadata: dict[str, str],
    idempotency_key: str,
) -> stripe.Subscription:
    """Start a recurring subscription that first bills at ``trial_end``."""
    client = get_stripe_client()
    params: dict[str, Any] = {
        "customer": customer_id,
        "items": [{"price": price_id}],
        "collection_method": "charge_automatically",
        "trial_end": to_timestamp(trial_end),
        "proration_behavior": "none",
        "metadata": metadata,
    }
    if payment_method_id:
        params["default_payment_method"] = payment_method_id
    subscription = await client.v1.subscriptions.create_async(
        params=params,
        options={"idempotency_key": idempotency_key},
    )
    logger.info("Created Stripe subscription %s for customer %s", subscription.id, customer_id)
    return subscription


async def clear_subscription_metadata(subscription_id: str, keys: list[str]) -> stripe.Subscription:
    """Remove metadata keys (Stripe deletes a key set to an empty string)."""
    client = get_stripe_client()
    return await client.v1.subscriptions.update_async(
        subscription_id,
        params={"metadata": {key: "" for key in keys}},
    )


async def pause_collection(subscription_id: str) -> stripe.Subscription:
    """Stop collecting payments, voiding invoices until resumed."""
    client = get_stripe_client()
    logger.info("Pausing collection for subscription %s", subscription_id)
    return await client.v1.subscriptions.update_async(
        subscription_id,
        params={"pause_collection": {"behavior": "void"}},
    )


# -- Charges, balance, payouts ----------------------------------------------


async def get_payment_intent(payment_intent_id: str) -> stripe.PaymentIntent:
    """Retrieve a PaymentIntent (with its latest charge expanded)."""
    client = get_stripe_client()
    return await client.v1.payment_intents.retrieve_async(
        payment_intent_id, params={"expand": ["latest_charge"]}
    )


async def get_charge(charge_id: str) -> stripe.Charge:
    """Retrieve a Charge by ID."""
    client = get_stripe_client()
    return await client.v1.charges.retrieve_async(charge_id)


async def get_balance() -> stripe.Balance:
    """Retrieve the account balance."""
    client = get_stripe_client()
    return await client.v1.balance.retrieve_async()


async def list_payouts(limit: int = 10) -> list[stripe.Payout]:
    """Most recent payouts, newest first."""
    client = get_stripe_client()
    payouts = await client.v1.payouts.list_async(params={"limit": limit})
    return list(payouts.data)


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous)."""
    client = get_stripe_client()
    return client.construct_event(payload, sig_header, settings.stripe_webhook_secret)
