"""
אימות JWT למשתמשי tenant — הורים, צוות ומנהלים

הטוקן נושא את ה-tenant של המשתמש; כל שאילתה בנתיבים מאומתים מסוננת
לפי tenant_id מהטוקן ולא לפי קלט מהבקשה.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_ROLES = frozenset({"admin", "owner"})


class TokenPayload(BaseModel):
    """תוכן ה-JWT token"""
    user_id: str
    tenant_id: str
    role: str
    exp: int  # Unix timestamp — סטנדרט JWT

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def create_access_token(
    user_id: str,
    tenant_id: str,
    role: str,
    expires_minutes: Optional[int] = None,
) -> str:
    """יצירת JWT token למשתמש tenant"""
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY לא מוגדר — אי אפשר ליצור טוקן")
    minutes = expires_minutes if expires_minutes is not None else settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {
        "user_id": user_id,
        "tenant_id": tenant_id,
        "role": role,
        "exp": int(expire.timestamp()),
    }
    encoded = pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    logger.info(
        "JWT token created",
        extra_data={"user_id": user_id, "tenant_id": tenant_id},
    )
    return encoded


def verify_token(token: str) -> Optional[TokenPayload]:
    """אימות JWT token — מחזיר None אם לא תקין או פג תוקף"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY ריק — טוקנים לא יאומתו")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return TokenPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, ValueError, TypeError) as e:
        logger.warning("JWT payload malformed", extra_data={"error_type": type(e).__name__})
        return None
