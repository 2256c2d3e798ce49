from fastapi import APIRouter

from portal.api.routes import duplicates, health, invites, ppt

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(duplicates.router, prefix="/admin/suppliers", tags=["admin"])
api_router.include_router(ppt.router, prefix="/ppt", tags=["ppt"])
api_router.include_router(invites.router, prefix="/invite-codes", tags=["invites"])
