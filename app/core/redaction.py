"""
Secret redaction for logs.

כל מה שנרשם בלוג מנתיב התשלומים עובר כאן: מפתחות API, חתימות webhook,
טוקנים וסיסמאות לא יוצאים ללוג ולא ללקוח.
"""
import re
import traceback
from typing import Any

from app.core.logging import get_logger

logger = get_logger(__name__)

SENSITIVE_KEY_PATTERN = re.compile(
    r"(authorization|api[_-]?key|secret|signature|token|password|credential|webhook)",
    re.IGNORECASE,
)

# מחרוזת אטומה ארוכה (token / key) — משאירים 4 תווים בכל צד
_OPAQUE_TOKEN_RE = re.compile(r"^[A-Za-z0-9+/_=-]{24,}$")
_BEARER_RE = re.compile(r"(bearer\s+)[a-z0-9._~+/-]+", re.IGNORECASE)
_INLINE_SECRET_RE = re.compile(
    r"(api[_-]?key|secret|token|signature)\s*[:=]\s*['\"]?[^'\"\s,]+",
    re.IGNORECASE,
)

REDACTED = "***"


def redact_string(value: str, *, mask_opaque: bool = True) -> str:
    if not value:
        return value

    if mask_opaque and _OPAQUE_TOKEN_RE.match(value):
        return f"{value[:4]}{REDACTED}{value[-4:]}"

    value = _BEARER_RE.sub(rf"\1{REDACTED}", value)
    return _INLINE_SECRET_RE.sub(rf"\1={REDACTED}", value)


def redact_value(value: Any, *, mask_opaque: bool = True) -> Any:
    """מיסוך רקורסיבי של dict/list/str — מפתחות רגישים מוחלפים ב-***

    mask_opaque=False משאיר מחרוזות hex ארוכות (fingerprints, מזהי bill) כמו
    שהן; מפתחות רגישים עדיין מוחלפים. לשימוש ב-payload של אירועי audit.
    """
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_string(value, mask_opaque=mask_opaque)
    if isinstance(value, (list, tuple)):
        return [redact_value(item, mask_opaque=mask_opaque) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if SENSITIVE_KEY_PATTERN.search(str(key)) else redact_value(entry, mask_opaque=mask_opaque)
            for key, entry in value.items()
        }
    return redact_string(str(value), mask_opaque=mask_opaque)


def describe_error(error: BaseException | Any) -> Any:
    """ייצוג בטוח של שגיאה ללוג"""
    if isinstance(error, BaseException):
        return {
            "name": type(error).__name__,
            "message": redact_string(str(error)),
            "stack": redact_string(
                "".join(traceback.format_exception(type(error), error, error.__traceback__))
            ),
        }
    return redact_value(error)


def log_payment_error(
    context: str,
    error: BaseException | Any,
    details: dict[str, Any] | None = None,
) -> None:
    logger.error(
        f"[payment:{context}] failure",
        extra_data={
            "context": context,
            "error": describe_error(error),
            "details": redact_value(details),
        },
    )
