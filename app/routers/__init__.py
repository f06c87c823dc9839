"""API routers for the marketplace backend."""
from fastapi import APIRouter

from . import admin, apikeys, disputes, escrows, health, notifications, projects, quotes, users


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(users.router)
    api_router.include_router(apikeys.router)
    api_router.include_router(projects.router)
    api_router.include_router(quotes.router)
    api_router.include_router(escrows.router)
    api_router.include_router(disputes.router)
    api_router.include_router(notifications.router)
    api_router.include_router(admin.router)
    return api_router
