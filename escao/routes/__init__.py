"""API routes."""

from .admin import router as admin_router
from .auth import router as auth_router
from .disputes import router as disputes_router
from .escrow import router as escrow_router
from .users import router as users_router
from .webhooks import router as webhooks_router

__all__ = [
    "admin_router",
    "auth_router",
    "users_router",
    "escrow_router",
    "disputes_router",
    "webhooks_router",
]
