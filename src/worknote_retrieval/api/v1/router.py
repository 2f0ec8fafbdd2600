"""API v1 router aggregation.

All v1 endpoints are prefixed with `/api/v1`:
- Health (`/api/v1/health`)
- Admin embedding maintenance (`/api/v1/admin/*`)
- Hybrid search (`/api/v1/search`)
"""

from fastapi import APIRouter

from worknote_retrieval.api.v1 import admin, health, search

router = APIRouter(
    prefix="/api/v1",
    responses={
        404: {"description": "Not found"},
        422: {"description": "Validation error"},
        500: {"description": "Internal server error"},
    },
)

router.include_router(health.router)
router.include_router(admin.router)
router.include_router(search.router)
