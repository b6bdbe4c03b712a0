"""
Tenant Service - חיפוש tenants לפי slug ודומיין
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException, ErrorCode
from app.core.hosts import tenant_subdomain_base_domain
from app.core.logging import get_logger
from app.core.validation import is_reserved_tenant_slug
from app.db.models.tenant import Tenant, TenantDomain

logger = get_logger(__name__)


class SlugLookupError(AppException):
    """Tenant / domain lookup failed while checking a slug"""

    def __init__(self, internal_message: Optional[str] = None):
        super().__init__(
            message="Unable to verify slug availability.",
            error_code=ErrorCode.SLUG_LOOKUP_FAILED,
            status_code=500,
            internal_message=internal_message,
        )


def tenant_domain_for_slug(slug: str) -> str:
    return f"{slug}.{tenant_subdomain_base_domain()}"


class TenantService:
    """Service for tenant directory lookups"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        result = await self.db.execute(select(Tenant).where(Tenant.slug == slug))
        return result.scalar_one_or_none()

    async def get_tenant_domain(self, domain: str) -> Optional[TenantDomain]:
        result = await self.db.execute(select(TenantDomain).where(TenantDomain.domain == domain))
        return result.scalar_one_or_none()

    async def check_slug_availability(self, slug: str) -> dict:
        """
        slug פנוי רק אם אין tenant עם ה-slug ואין דומיין {slug}.{base}.

        slug שמור לעולם לא פנוי, גם כשאין שורה תפוסה.
        """
        domain = tenant_domain_for_slug(slug)
        try:
            tenant = await self.get_tenant_by_slug(slug)
            tenant_domain = await self.get_tenant_domain(domain)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Slug availability lookup failed",
                extra_data={"slug": slug, "error_type": type(e).__name__},
            )
            raise SlugLookupError(internal_message=str(e)) from e

        reserved = is_reserved_tenant_slug(slug)
        return {
            "slug": slug,
            "domain": domain,
            "available": tenant is None and tenant_domain is None and not reserved,
            "reserved": reserved,
        }
