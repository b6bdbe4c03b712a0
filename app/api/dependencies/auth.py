"""
FastAPI dependency לאימות משתמשי tenant

שימוש:
    @router.post("/pay")
    async def pay(
        auth: TokenPayload = Depends(get_current_tenant_user),
        db: AsyncSession = Depends(get_db),
    ):
        tenant_id = auth.tenant_id
"""
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.auth import verify_token, TokenPayload
from app.core.exceptions import AuthenticationError, ForbiddenError
from app.core.logging import get_logger

logger = get_logger(__name__)

# auto_error=False — כדי שגם header חסר יחזור בצורת השגיאה האחידה (401)
security = HTTPBearer(auto_error=False)


async def get_current_tenant_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> TokenPayload:
    """
    אימות JWT של משתמש tenant.

    מחזיר TokenPayload עם user_id, tenant_id, role.
    זורק 401 אם הטוקן חסר, לא תקין או פג תוקף.
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError()

    token_data = verify_token(credentials.credentials)
    if not token_data:
        raise AuthenticationError("Invalid or expired token.")
    return token_data


async def require_admin(
    auth: TokenPayload = Depends(get_current_tenant_user),
) -> TokenPayload:
    """משתמש tenant עם תפקיד admin/owner בלבד"""
    if not auth.is_admin:
        logger.warning(
            "Admin access denied — wrong role in token",
            extra_data={"user_id": auth.user_id, "tenant_id": auth.tenant_id, "role": auth.role},
        )
        raise ForbiddenError("Admin access required.")
    return auth
