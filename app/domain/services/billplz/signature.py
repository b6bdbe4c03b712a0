"""
Billplz webhook payload — נרמול ואימות חתימה (X-Signature)
"""
import hashlib
import hmac
from collections.abc import Iterable, Mapping

SIGNATURE_FIELD = "x_signature"


def normalize_billplz_payload(raw: Mapping[str, str]) -> dict[str, str]:
    """billplz[id] → id; שאר המפתחות נשארים כמו שהם"""
    payload: dict[str, str] = {}
    for key, value in raw.items():
        if key.startswith("billplz[") and key.endswith("]"):
            payload[key[len("billplz["):-1]] = value
        elif key.startswith("billplz["):
            payload[key[len("billplz["):]] = value
        else:
            payload[key] = value
    return payload


def build_signature_source(payload: Mapping[str, str | None]) -> str:
    """key+value לכל שדה (חוץ מ-x_signature), ממוין לפי מפתח, מחובר ב-|"""
    return "|".join(
        f"{key}{payload[key] if payload[key] is not None else ''}"
        for key in sorted(payload)
        if key != SIGNATURE_FIELD
    )


def compute_billplz_signature(payload: Mapping[str, str | None], secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        build_signature_source(payload).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_billplz_signature(payload: Mapping[str, str | None], secrets: Iterable[str]) -> bool:
    """True אם החתימה תואמת לאחד המפתחות הפעילים (תמיכה ברוטציה)"""
    signature = payload.get(SIGNATURE_FIELD)
    if not signature:
        return False

    matched = False
    for secret in secrets:
        if not secret:
            continue
        expected = compute_billplz_signature(payload, secret)
        # compare_digest לכל מפתח — בלי יציאה מוקדמת שחושפת איזה מפתח תאם
        if hmac.compare_digest(expected, signature):
            matched = True
    return matched


def is_allowed_billplz_collection(collection_id: str | None, allowed: Iterable[str]) -> bool:
    """payload בלי collection_id מתקבל; collection זר נדחה"""
    if not collection_id:
        return True
    return collection_id.strip() in {value.strip() for value in allowed if value}
