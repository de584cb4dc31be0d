"""
API routes initialization.

This module aggregates all API routers and provides a single router
to include in the main application.
"""

from fastapi import APIRouter

from mediaflow.api.routes import admin, media, tenants

# Create main API router
api_router = APIRouter()

# Media ingestion, status, search
api_router.include_router(media.router)

# Tenant quota
api_router.include_router(tenants.router)

# Recovery admin surface
api_router.include_router(admin.router)
