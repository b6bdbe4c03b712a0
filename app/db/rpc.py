"""
Stored Procedure Calls

גבול RPC אטומי מול PostgreSQL: כל פרוצדורה רצה בטרנזקציה אחת בצד ה-DB.
הקוד כאן רק מרכיב את הקריאה ומנרמל שגיאות ל-StoreError.
"""
import json
import re
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.errors import StoreError, to_store_error

logger = get_logger(__name__)

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def _build_call(function: str, args: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    if not _IDENTIFIER_RE.match(function):
        raise ValueError(f"Invalid procedure name: {function!r}")

    placeholders: list[str] = []
    params: dict[str, Any] = {}
    for name, value in args.items():
        if not _IDENTIFIER_RE.match(name):
            raise ValueError(f"Invalid procedure argument: {name!r}")
        if isinstance(value, (dict, list)):
            placeholders.append(f"CAST(:{name} AS jsonb)")
            params[name] = json.dumps(value, ensure_ascii=False, default=str)
        else:
            placeholders.append(f":{name}")
            params[name] = value

    # ארגומנטים בשם (p_x => :p_x) — הסדר ב-dict לא משנה
    named = ", ".join(
        f"{name} => {placeholder}" for name, placeholder in zip(args.keys(), placeholders)
    )
    return f"SELECT * FROM {function}({named})", params


async def call_procedure(
    db: AsyncSession,
    function: str,
    args: dict[str, Any],
) -> list[dict[str, Any]]:
    """מריץ פרוצדורה ומחזיר את השורות כ-dicts.

    זורק StoreError על כל כשל מה-DB (אחרי rollback של ה-session).
    """
    statement, params = _build_call(function, args)
    try:
        result = await db.execute(text(statement), params)
        rows = [dict(row) for row in result.mappings().all()]
        await db.commit()
    except DBAPIError as exc:
        await db.rollback()
        store_error = to_store_error(exc) or StoreError(message=str(exc))
        logger.warning(
            "Stored procedure call failed",
            extra_data={"function": function, "code": store_error.code},
        )
        raise store_error from exc
    return rows


def first_row(rows: Any) -> dict[str, Any] | None:
    """שורה ראשונה מתוצאת RPC — תומך גם ב-dict בודד"""
    if isinstance(rows, list):
        return rows[0] if rows and isinstance(rows[0], dict) else None
    if isinstance(rows, dict):
        return rows
    return None
