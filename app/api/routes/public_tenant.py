"""
Public Tenant API Routes — onboarding של בית ספר חדש
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ErrorCode, ForbiddenError, ValidationException
from app.core.hosts import is_public_registration_host
from app.core.middleware import get_request_id
from app.core.rate_limit import require_rate_limit
from app.core.trust import get_request_host
from app.core.validation import SlugValidator, hash_for_rate_limit
from app.db.database import get_db
from app.domain.services.tenant_service import TenantService

router = APIRouter()

SLUG_CHECK_RATE_LIMIT = 40
SLUG_CHECK_WINDOW_MS = 60 * 1000


@router.get(
    "/tenant/slug-availability",
    summary="בדיקת זמינות slug",
    description=(
        "זמין רק מה-host השיווקי. מחזיר available=false גם ל-slug שמור. "
        "מוגבל ל-40 בדיקות בדקה לכל slug."
    ),
)
async def slug_availability(
    request: Request,
    slug: str = "",
    db: AsyncSession = Depends(get_db),
):
    """Check whether a tenant slug (and its subdomain) is free"""
    if not is_public_registration_host(get_request_host(request)):
        raise ForbiddenError(
            "Slug availability is only available on the SaaS onboarding host.",
            error_code=ErrorCode.HOST_NOT_ALLOWED,
        )

    normalized = SlugValidator.normalize(slug)
    if not SlugValidator.is_valid(normalized):
        raise ValidationException(
            "slug must be 3-63 chars, lowercase letters, numbers, and hyphens only.",
            field="slug",
        )

    await require_rate_limit(
        f"public:slug-availability:{hash_for_rate_limit(normalized)}",
        SLUG_CHECK_RATE_LIMIT,
        SLUG_CHECK_WINDOW_MS,
        "Too many checks. Please retry later.",
    )

    service = TenantService(db)
    availability = await service.check_slug_availability(normalized)
    return {
        "ok": True,
        "request_id": get_request_id(request),
        **availability,
    }
