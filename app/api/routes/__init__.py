"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.payments import router as payments_router
from app.api.routes.parent_online import router as parent_online_router
from app.api.routes.admin_students import router as admin_students_router
from app.api.routes.public_tenant import router as public_tenant_router
from app.api.webhooks.billplz import router as billplz_router

router = APIRouter()

router.include_router(payments_router, prefix="/payments", tags=["payments"])
router.include_router(parent_online_router, prefix="/parent", tags=["parent"])
router.include_router(admin_students_router, prefix="/admin", tags=["admin"])
router.include_router(public_tenant_router, prefix="/public", tags=["public"])
router.include_router(billplz_router, prefix="/billplz", tags=["webhooks"])
