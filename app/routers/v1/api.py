# app/routers/v1/api.py

from fastapi import APIRouter

from app.routers.v1.endpoints import members, leaderboards
from app.routers.v1.endpoints import admin as admin_v1_router

# Main router of API v1; everything below lives under /api/v1
api_router = APIRouter(prefix="/api/v1")

# Read surfaces for the dashboard
api_router.include_router(members.router, tags=["Members"])
api_router.include_router(leaderboards.router, tags=["Leaderboards"])

# Admin endpoints
api_router.include_router(admin_v1_router.router, prefix="/admin", tags=["Admin"])
