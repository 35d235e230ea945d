# backend/app/routers/__init__.py

from fastapi import APIRouter

from .admin import router as admin_router
from .billing import router as billing_router
from .credits import router as credits_router
from .internal import router as internal_router

router = APIRouter()

# Include route definitions
router.include_router(credits_router, prefix="/api/v1", tags=["credits"])
router.include_router(internal_router, prefix="/api/v1/internal", tags=["internal"])
router.include_router(billing_router, prefix="/api/v1", tags=["billing"])
router.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
