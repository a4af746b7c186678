"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
"""

from fastapi import APIRouter

from api.routes import approvals, health, runs

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Plan runs
api_v1_router.include_router(
    runs.router,
    prefix="/runs",
    tags=["Runs"],
)

# Approvals
api_v1_router.include_router(
    approvals.router,
    prefix="/approvals",
    tags=["Approvals"],
)
