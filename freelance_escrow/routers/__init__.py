"""API routers for the freelance escrow backend."""
from fastapi import APIRouter

from . import admin, apikeys, escrow, health, milestones, psp, users, workspaces


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(users.router)
    api_router.include_router(apikeys.router)
    api_router.include_router(workspaces.router)
    api_router.include_router(milestones.router)
    api_router.include_router(escrow.router)
    api_router.include_router(admin.router)
    api_router.include_router(psp.router)
    return api_router
