"""Domain exceptions raised by routing and billing code.

API routers translate these into ``HTTPException`` responses.
"""


class MemberhubError(Exception):
    """Base class for all Memberhub domain errors."""


class RoutingError(MemberhubError):
    """Payment could not be routed to a business entity."""


class InvalidEntityError(RoutingError):
    """An override named an entity that does not exist or is inactive."""

    def __init__(self, entity_id: object) -> None:
        self.entity_id = entity_id
        super().__init__(f"Business entity {entity_id} not found or inactive")


class NoViableEntityError(RoutingError):
    """Every entity would breach its VAT threshold (less the safety buffer)."""

    def __init__(self, amount: float, safety_buffer: float) -> None:
        self.amount = amount
        self.safety_buffer = safety_buffer
        super().__init__(
            f"No business entity can accept £{amount:,.2f} "
            f"without breaching its VAT threshold (safety buffer £{safety_buffer:,.0f})"
        )


class SubscriptionMappingError(MemberhubError):
    """A gateway event could not be mapped to a local subscription."""

    def __init__(
        self,
        message: str,
        *,
        event_id: str | None = None,
        event_type: str | None = None,
        invoice_id: str | None = None,
        subscription_id: str | None = None,
        customer_id: str | None = None,
    ) -> None:
        self.event_id = event_id
        self.event_type = event_type
        self.invoice_id = invoice_id
        self.subscription_id = subscription_id
        self.customer_id = customer_id
        super().__init__(message)


class PaymentSetupError(MemberhubError):
    """A payment-method setup is incomplete or does not belong to the subscription."""


class GatewayDeclineError(MemberhubError):
    """The payment gateway declined a charge."""

    def __init__(self, reason: str, decline_code: str | None = None) -> None:
        self.reason = reason
        self.decline_code = decline_code
        super().__init__(reason)
