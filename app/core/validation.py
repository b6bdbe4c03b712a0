"""
Input Validation Utilities

Provides validation for tenant onboarding inputs:
- Tenant slug format and reserved words
- Email / password checks
- Stable hashing for rate-limit keys and idempotency keys
"""
import hashlib
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    # תווית DNS: מתחיל ומסתיים באות/ספרה, מקפים באמצע בלבד
    TENANT_SLUG = re.compile(r"^[a-z0-9](?:[a-z0-9-]{1,61}[a-z0-9])$")

    EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

    IDEMPOTENCY_KEY = re.compile(r"^[A-Za-z0-9:_-]{12,120}$")


# מילים שמור — לא ניתנות כ-slug של בית ספר (תת-דומיינים של המערכת עצמה)
RESERVED_TENANT_SLUGS = frozenset({
    "www",
    "app",
    "api",
    "admin",
    "administrator",
    "auth",
    "login",
    "logout",
    "signup",
    "register",
    "dashboard",
    "billing",
    "payments",
    "billplz",
    "webhook",
    "webhooks",
    "mail",
    "email",
    "smtp",
    "ftp",
    "static",
    "assets",
    "cdn",
    "docs",
    "help",
    "support",
    "status",
    "blog",
    "dev",
    "staging",
    "test",
    "demo",
    "internal",
    "system",
    "root",
    "eclazz",
})


class SlugValidator:
    """Tenant slug normalization and validation"""

    MIN_LENGTH = 3
    MAX_LENGTH = 63

    @staticmethod
    def normalize(value: str | None) -> str:
        """
        Normalize free text into a slug candidate.

        אותיות קטנות, כל תו שאינו [a-z0-9-] הופך למקף, רצפי מקפים
        מתכווצים ומקפים בקצוות נחתכים.
        """
        if not value:
            return ""
        slug = value.strip().lower()
        slug = re.sub(r"[^a-z0-9-]+", "-", slug)
        slug = re.sub(r"-{2,}", "-", slug)
        return slug.strip("-")

    @staticmethod
    def is_valid(slug: str | None) -> bool:
        """בדיקת פורמט בלבד — לא בודק מילים שמורות"""
        if not slug:
            return False
        if not SlugValidator.MIN_LENGTH <= len(slug) <= SlugValidator.MAX_LENGTH:
            return False
        return bool(ValidationPatterns.TENANT_SLUG.match(slug))


def is_reserved_tenant_slug(slug: str | None) -> bool:
    """בדיקה בלתי תלויה ב-is_valid — יש לבדוק את שתיהן לפני קבלת slug"""
    if not slug:
        return False
    return slug.strip().lower() in RESERVED_TENANT_SLUGS


class EmailValidator:
    """Email validation utilities"""

    MAX_LENGTH = 254

    @staticmethod
    def normalize(email: str | None) -> str:
        return (email or "").strip().lower()

    @staticmethod
    def validate(email: str | None) -> bool:
        normalized = EmailValidator.normalize(email)
        if not normalized or len(normalized) > EmailValidator.MAX_LENGTH:
            return False
        return bool(ValidationPatterns.EMAIL.match(normalized))


def is_valid_password(password: str | None) -> bool:
    """לפחות 8 תווים, אות אחת וספרה אחת"""
    if not password or len(password) < 8:
        return False
    has_letter = any(ch.isalpha() for ch in password)
    has_digit = any(ch.isdigit() for ch in password)
    return has_letter and has_digit


def hash_for_rate_limit(value: str) -> str:
    """sha256 מקוצר (16 תווי hex) — לא שומרים קלט גולמי במפתחות המונה"""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def is_valid_idempotency_key(value: str | None) -> bool:
    return bool(value) and bool(ValidationPatterns.IDEMPOTENCY_KEY.match(value))


def build_idempotency_key(*parts: str) -> str:
    """מפתח idempotency דטרמיניסטי מצד השרת (כשהלקוח לא שלח כזה)"""
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return f"srv:{digest[:48]}"
