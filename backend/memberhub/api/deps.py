"""Shared API dependencies — single import point for all routers.

    from memberhub.api.deps import get_db, get_current_user, require_admin
"""

from memberhub.auth.dependencies import get_current_user, require_admin
from memberhub.billing.notifications import get_notifier
from memberhub.database import get_db

__all__ = [
    "get_db",
    "get_current_user",
    "get_notifier",
    "require_admin",
]
