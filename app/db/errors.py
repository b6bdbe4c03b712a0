"""
Store Error Classification

שגיאות מה-driver (asyncpg דרך SQLAlchemy, sqlite בבדיקות, או dict בסגנון
PostgREST) מנורמלות ל-StoreError צר: code / message / details.
כל ה-pattern matching (unique violation, "does not exist") מרוכז ב-
classify_store_error ולא מפוזר בקוד.
"""
from collections.abc import Mapping
from enum import Enum
from typing import Any

from sqlalchemy.exc import DBAPIError, IntegrityError

# SQLSTATE של PostgreSQL
UNIQUE_VIOLATION_CODE = "23505"
UNDEFINED_FUNCTION_CODE = "42883"
UNDEFINED_TABLE_CODE = "42P01"
UNDEFINED_COLUMN_CODE = "42703"


class StoreErrorKind(str, Enum):
    """טקסונומיה סגורה של כשלי store"""
    UNIQUE_VIOLATION = "unique_violation"
    MISSING_FUNCTION = "missing_function"
    MISSING_RELATION = "missing_relation"
    MISSING_COLUMN = "missing_column"
    OTHER = "other"


class StoreError(Exception):
    """Narrow typed view of a database failure"""

    def __init__(
        self,
        message: str | None = None,
        code: str | None = None,
        details: str | None = None,
    ):
        super().__init__(message or "store error")
        self.message = message
        self.code = code
        self.details = details

    @property
    def text(self) -> str:
        """message + details באותיות קטנות — לחיפוש תבניות"""
        return f"{self.message or ''} {self.details or ''}".lower()

    def __repr__(self) -> str:
        return f"StoreError(code={self.code!r}, message={self.message!r})"


def _from_dbapi(exc: DBAPIError) -> StoreError:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    cause = getattr(orig, "__cause__", None)
    if not code and cause is not None:
        code = getattr(cause, "sqlstate", None)
    details = getattr(cause, "detail", None) or getattr(orig, "detail", None)
    message = str(orig) if orig is not None else str(exc)

    # sqlite (בדיקות) לא מחזיר SQLSTATE — unique נזהה לפי סוג החריגה
    if not code and isinstance(exc, IntegrityError) and "unique" in message.lower():
        code = UNIQUE_VIOLATION_CODE

    return StoreError(message=message, code=code, details=details)


def to_store_error(error: Any) -> StoreError | None:
    """המרה של כל צורת שגיאה ל-StoreError; None אם אין בה שום מידע"""
    if error is None:
        return None
    if isinstance(error, StoreError):
        return error
    if isinstance(error, DBAPIError):
        return _from_dbapi(error)
    if isinstance(error, Mapping):
        code = error.get("code")
        message = error.get("message")
        details = error.get("details")
        if not any(isinstance(v, str) and v for v in (code, message, details)):
            return None
        return StoreError(
            message=message if isinstance(message, str) else None,
            code=code if isinstance(code, str) else None,
            details=details if isinstance(details, str) else None,
        )
    return None


def classify_store_error(
    error: Any,
    *,
    function: str | None = None,
    relation: str | None = None,
    column: str | None = None,
) -> StoreErrorKind:
    """סיווג שגיאת store לטקסונומיה הסגורה.

    function/relation/column מצמצמים את התאמות ה-"does not exist" לאובייקט
    הספציפי — פונקציה חסרה אחרת היא כשל אמיתי ולא "סביבה שלא עברה מיגרציה".
    """
    store_error = to_store_error(error)
    if store_error is None:
        return StoreErrorKind.OTHER

    text = store_error.text

    if store_error.code == UNIQUE_VIOLATION_CODE or "duplicate key" in text:
        return StoreErrorKind.UNIQUE_VIOLATION

    if function:
        if (
            "function" in text
            and function.lower() in text
            and "does not exist" in text
        ) or (
            "could not find the function" in text and function.lower() in text
        ):
            return StoreErrorKind.MISSING_FUNCTION

    if relation:
        name = relation.lower()
        if (
            f'relation "public.{name}" does not exist' in text
            or f'relation "{name}" does not exist' in text
            or ("could not find the table" in text and name in text and "schema cache" in text)
            or f"no such table: {name}" in text
        ):
            return StoreErrorKind.MISSING_RELATION

    if column:
        name = column.lower()
        missing_column = (
            ("column" in text and "does not exist" in text)
            or ("could not find the" in text and "column" in text and "schema cache" in text)
        )
        if missing_column and name in text:
            return StoreErrorKind.MISSING_COLUMN

    return StoreErrorKind.OTHER


def is_unique_violation(error: Any) -> bool:
    return classify_store_error(error) is StoreErrorKind.UNIQUE_VIOLATION


def is_missing_function_error(error: Any, function: str) -> bool:
    return classify_store_error(error, function=function) is StoreErrorKind.MISSING_FUNCTION


def is_missing_relation_error(error: Any, relation: str) -> bool:
    return classify_store_error(error, relation=relation) is StoreErrorKind.MISSING_RELATION
