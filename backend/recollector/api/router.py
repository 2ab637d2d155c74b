"""Recollector API Router - aggregates all versioned API routes."""

from fastapi import APIRouter

from recollector.api import auth

# Main API router - all routes will be prefixed with /api/v1
api_router = APIRouter(prefix="/api/v1")

# Include routers
api_router.include_router(auth.router)
