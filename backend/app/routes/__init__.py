"""API routes."""

from .admin import router as admin_router
from .admin_payments import router as admin_payments_router
from .contractor import router as contractor_router
from .homeowner import router as homeowner_router

__all__ = [
    "homeowner_router",
    "contractor_router",
    "admin_router",
    "admin_payments_router",
]
