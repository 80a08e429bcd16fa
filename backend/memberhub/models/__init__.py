"""SQLAlchemy models for Memberhub.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from memberhub.models.business_entity import BusinessEntity, ServiceOffering
from memberhub.models.membership import Membership
from memberhub.models.payment import Payment
from memberhub.models.routing import RoutingDecision, VATCalculation
from memberhub.models.subscription import Invoice, Subscription
from memberhub.models.system_setting import SystemSetting
from memberhub.models.user import User

__all__ = [
    "BusinessEntity",
    "Invoice",
    "Membership",
    "Payment",
    "RoutingDecision",
    "ServiceOffering",
    "Subscription",
    "SystemSetting",
    "User",
    "VATCalculation",
]
