"""
Trust Boundary — זיהוי IP הלקוח וה-host האמיתי מאחורי proxies

כותרות forwarded נשלטות ע"י התוקף, אלא אם proxy בשליטת המפעיל מנקה
ומחליף אותן. לכן:
- ב-x-forwarded-for נבדק רק ה-hop האחרון (הקרוב אלינו) מול allow-list,
  ורק אם הוא מהימן מחזירים את הכניסה השמאלית (הלקוח).
- כותרות של managed edge (Vercel / Cloudflare / Fly) מתקבלות כשהסמן של
  אותו edge מופיע איתן. זו היוריסטיקה ולא ערובה קריפטוגרפית: אם ה-origin
  נגיש ישירות, תוקף יכול לשלוח את שתי הכותרות בעצמו. על המפעיל לחסום
  גישה ישירה ל-origin.

כל קלט פגום מוביל לתוצאה הכי פחות מהימנה ("unknown" / host header) —
לעולם לא חריגה.
"""
import re
from collections.abc import Mapping

from fastapi import Request

from app.core.config import parse_csv, settings

UNKNOWN_CLIENT_IP = "unknown"

# (כותרת IP של ה-edge, סמן שמעיד שהבקשה עברה דרכו)
MANAGED_EDGE_IP_HEADERS: tuple[tuple[str, str], ...] = (
    ("x-vercel-forwarded-for", "x-vercel-id"),
    ("cf-connecting-ip", "cf-ray"),
    ("fly-client-ip", "fly-region"),
)
MANAGED_EDGE_MARKERS: tuple[str, ...] = tuple(marker for _, marker in MANAGED_EDGE_IP_HEADERS)

_IP_CHARS_RE = re.compile(r"^[A-Fa-f0-9:.]+$")
_PORT_RE = re.compile(r"^\d+$")
MAX_IP_LENGTH = 64


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    return value if isinstance(value, str) else None


def _strip_port(value: str) -> str:
    """[v6]:port → v6, v4:port → v4; כתובת v6 ללא סוגריים נשארת כמו שהיא"""
    if value.startswith("["):
        closing = value.find("]")
        if closing > 0:
            return value[1:closing].strip()
        return value
    if value.count(":") == 1:
        host, _, port = value.partition(":")
        if _PORT_RE.match(port) or not port:
            return host.strip()
    return value


def sanitize_ip(value: str | None) -> str | None:
    """נרמול ערך IP מכותרת. None אם הערך לא נראה כמו כתובת."""
    if not value:
        return None
    first = value.split(",")[0].strip()
    if not first:
        return None
    candidate = _strip_port(first)
    if not candidate or not _IP_CHARS_RE.match(candidate):
        return None
    if len(candidate) > MAX_IP_LENGTH:
        return None
    return candidate


def normalize_host(value: str | None) -> str | None:
    """host ללא port, באותיות קטנות; רק הערך הראשון מרשימה"""
    if not value:
        return None
    first = value.split(",")[0].strip()
    if not first:
        return None
    if first.startswith("["):
        closing = first.find("]")
        if closing > 0:
            host = first[1:closing]
            return host.strip().lower() or None
    if first.count(":") == 1:
        first = first.split(":", 1)[0]
    host = first.strip().lower()
    return host or None


def trusted_proxy_ips(override: str | None = None) -> set[str]:
    """איחוד של רשימת ה-override של הפיצ'ר עם TRUSTED_PROXY_IPS הגלובלי"""
    trusted: set[str] = set()
    for raw in (override, settings.TRUSTED_PROXY_IPS):
        for item in parse_csv(raw):
            ip = sanitize_ip(item)
            if ip:
                trusted.add(ip)
    return trusted


def parse_forwarded_chain(raw: str | None) -> list[str]:
    """x-forwarded-for → רשימת IPs (לקוח משמאל, proxy אחרון מימין)"""
    if not raw:
        return []
    chain: list[str] = []
    for item in raw.split(","):
        ip = sanitize_ip(item)
        if ip:
            chain.append(ip)
    return chain


def _last_hop_trusted(chain: list[str], trusted: set[str]) -> bool:
    return bool(chain) and chain[-1] in trusted


def resolve_client_ip(headers: Mapping[str, str]) -> str:
    """IP הלקוח לצורך rate limiting. תמיד מחזיר מחרוזת ("unknown" כשאין אמון)."""
    for ip_header, marker in MANAGED_EDGE_IP_HEADERS:
        edge_ip = sanitize_ip(_header(headers, ip_header))
        if edge_ip and _header(headers, marker):
            return edge_ip

    chain = parse_forwarded_chain(_header(headers, "x-forwarded-for"))
    if _last_hop_trusted(chain, trusted_proxy_ips(settings.RATE_LIMIT_TRUSTED_PROXY_IPS)):
        return chain[0]

    if settings.RATE_LIMIT_TRUST_X_REAL_IP:
        real_ip = sanitize_ip(_header(headers, "x-real-ip"))
        if real_ip:
            return real_ip

    return UNKNOWN_CLIENT_IP


def can_trust_forwarded_host(headers: Mapping[str, str]) -> bool:
    if settings.TRUST_X_FORWARDED_HOST:
        return True
    if any(_header(headers, marker) for marker in MANAGED_EDGE_MARKERS):
        return True
    chain = parse_forwarded_chain(_header(headers, "x-forwarded-for"))
    return _last_hop_trusted(chain, trusted_proxy_ips(settings.HOST_TRUSTED_PROXY_IPS))


def resolve_host(headers: Mapping[str, str], url_hostname: str | None = None) -> str | None:
    """x-forwarded-host (רק כשיש אמון) → host → hostname מה-URL"""
    if can_trust_forwarded_host(headers):
        forwarded = normalize_host(_header(headers, "x-forwarded-host"))
        if forwarded:
            return forwarded

    host = normalize_host(_header(headers, "host"))
    if host:
        return host

    return normalize_host(url_hostname)


def get_request_host(request: Request) -> str | None:
    return resolve_host(request.headers, request.url.hostname)


def get_client_ip(request: Request) -> str:
    return resolve_client_ip(request.headers)
