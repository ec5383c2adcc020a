"""API routes."""

from fastapi import APIRouter

from storetrust.routes import admin, stores

api_router = APIRouter()

# Store catalogue, reviews, trust views
api_router.include_router(stores.router, prefix="/v1/stores", tags=["stores"])

# Admin endpoints (batch jobs)
api_router.include_router(admin.router, prefix="/v1/admin", tags=["admin"])
