"""
Tenant Host Classification

סיווג host מנורמל (אחרי get_request_host): דומיין שיווקי, תת-דומיין של
tenant או ה-host הישן של בית הספר הראשון.
"""
import re

from app.core.config import parse_csv, settings
from app.core.trust import normalize_host

DEFAULT_TENANT_BASE_DOMAIN = "eclazz.com"

# תוויות שלעולם אינן slug של tenant
NON_TENANT_LABELS = frozenset({"www", "app", "api"})

_SLUG_LABEL_RE = re.compile(r"^[a-z0-9-]{3,63}$")


def tenant_subdomain_base_domain() -> str:
    return normalize_host(settings.TENANT_SUBDOMAIN_BASE_DOMAIN) or DEFAULT_TENANT_BASE_DOMAIN


def marketing_hosts() -> set[str]:
    hosts = {h for h in (normalize_host(v) for v in parse_csv(settings.APP_MARKETING_HOSTS)) if h}
    hosts.add(tenant_subdomain_base_domain())
    hosts.add("localhost")
    hosts.add("127.0.0.1")
    return hosts


def is_marketing_host(host: str | None) -> bool:
    if not host:
        return False
    return host in marketing_hosts()


def is_tenant_subdomain_host(host: str | None) -> bool:
    if not host:
        return False
    base_domain = tenant_subdomain_base_domain()
    return host != base_domain and host.endswith(f".{base_domain}")


def extract_tenant_slug_from_host(host: str | None) -> str | None:
    """<slug>.<base-domain> → slug; None לכל דבר אחר (כולל תת-דומיין מקונן)"""
    if not host or not is_tenant_subdomain_host(host):
        return None
    suffix = f".{tenant_subdomain_base_domain()}"
    slug = host[: -len(suffix)].strip().lower()
    if not slug or "." in slug:
        return None
    if not _SLUG_LABEL_RE.match(slug):
        return None
    if slug in NON_TENANT_LABELS:
        return None
    return slug


def is_public_registration_host(host: str | None) -> bool:
    """רישום בית ספר חדש ובדיקת slug מותרים רק מה-host השיווקי"""
    return is_marketing_host(host)


def is_legacy_school_host(host: str | None) -> bool:
    return bool(host) and host == normalize_host(settings.LEGACY_SCHOOL_HOST)
