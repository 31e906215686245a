"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
"""

from fastapi import APIRouter

from api.routes import batches, executions, health

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Single executions
api_v1_router.include_router(
    executions.router,
    prefix="/executions",
    tags=["Executions"],
)

# Batches
api_v1_router.include_router(
    batches.router,
    prefix="/batches",
    tags=["Batches"],
)
