"""
שירות בדיקת בריאות — בדיקות תלויות (DB, Redis).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה של התלויות החיצוניות
"""
from typing import Any

from sqlalchemy import text

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import Database

logger = get_logger(__name__)

# סטטוסים אפשריים לתשובת readiness
_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"
_CHECK_DISABLED = "disabled"

# הודעות שגיאה מסוננות — ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"


async def _check_db(database: Database) -> str:
    """בדיקת חיבור למסד הנתונים באמצעות שאילתה קלה."""
    try:
        async with database.session_factory() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error_type": type(e).__name__})
        return _ERROR_DB


async def _check_redis() -> str:
    """PING ל-Redis — רק כש-rate limiting משתמש ב-backend המשותף."""
    if settings.RATE_LIMIT_BACKEND != "redis":
        return _CHECK_DISABLED
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות Redis נכשלה", extra_data={"error_type": type(e).__name__})
        return _ERROR_REDIS


async def check_readiness(database: Database) -> dict[str, Any]:
    """
    בדיקת מוכנות — status "healthy" אם כל התלויות תקינות, אחרת "degraded".

    db / redis: "ok", "disabled" או "error: ..."
    """
    checks = {
        "db": await _check_db(database),
        "redis": await _check_redis(),
    }

    all_ok = all(v in (_CHECK_OK, _CHECK_DISABLED) for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning(
            "בדיקת מוכנות — המערכת במצב degraded",
            extra_data=checks,
        )

    return {"status": overall_status, **checks}
