# app/routers/v1/endpoints/admin/__init__.py

from fastapi import APIRouter, Depends
from app.dependencies import verify_admin_key

from . import consistency, rankings, custom_rates, tasks

# Every admin endpoint requires the X-Admin-Key header
router = APIRouter(dependencies=[Depends(verify_admin_key)])

# /admin/consistency/verify
router.include_router(consistency.router, prefix="/consistency")

# /admin/rankings/recompute
router.include_router(rankings.router, prefix="/rankings")

# /admin/creators/{creator_id}/members/{member_id}/custom-rate
router.include_router(custom_rates.router, prefix="/creators")

# /admin/tasks, /admin/tasks/run
router.include_router(tasks.router, prefix="/tasks")
