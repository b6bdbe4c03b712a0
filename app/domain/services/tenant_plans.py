"""
Tenant Plans - קטלוג תוכניות ומגבלת תלמידים + צוות לכל tenant
"""
import math
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import TenantPlanLimitExceededError
from app.core.logging import get_logger
from app.db.rpc import call_procedure, first_row

logger = get_logger(__name__)

DEFAULT_TENANT_PLAN = "enterprise"

CHECK_PLAN_LIMIT_PROCEDURE = "check_tenant_plan_limit"


@dataclass(frozen=True)
class TenantPlan:
    code: str
    student_staff_cap: int
    trial_days: int
    grace_days: int


TENANT_PLAN_CATALOG: dict[str, TenantPlan] = {
    "starter": TenantPlan("starter", student_staff_cap=300, trial_days=14, grace_days=7),
    "growth": TenantPlan("growth", student_staff_cap=1000, trial_days=14, grace_days=10),
    "enterprise": TenantPlan("enterprise", student_staff_cap=2000, trial_days=14, grace_days=14),
}


def normalize_tenant_plan_code(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def is_supported_tenant_plan_code(plan: str) -> bool:
    return plan in TENANT_PLAN_CATALOG


def resolve_tenant_plan_code(value: Any) -> Optional[str]:
    """ריק/None → ברירת מחדל; קוד לא מוכר → None (לא נופלים לברירת מחדל)"""
    normalized = normalize_tenant_plan_code(value)
    if not normalized:
        return DEFAULT_TENANT_PLAN
    if not is_supported_tenant_plan_code(normalized):
        return None
    return normalized


def get_tenant_plan_cap(plan_code: str) -> int:
    return TENANT_PLAN_CATALOG[plan_code].student_staff_cap


@dataclass(frozen=True)
class TenantPlanLimitCheck:
    allowed: bool
    limit_code: str
    cap: int
    active_students: int
    active_staff: int
    projected_total: int
    overage: int
    grace_started_at: Optional[str]
    grace_ends_at: Optional[str]
    blocked_new_adds: bool

    def to_error_details(self) -> dict[str, Any]:
        return {
            "cap": self.cap,
            "active_students": self.active_students,
            "active_staff": self.active_staff,
            "projected_total": self.projected_total,
            "overage": self.overage,
            "grace_started_at": self.grace_started_at,
            "grace_ends_at": self.grace_ends_at,
            "blocked_new_adds": self.blocked_new_adds,
        }


def _to_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, int(number))


def _to_timestamp(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def limit_check_from_row(row: dict[str, Any]) -> TenantPlanLimitCheck:
    limit_code = row.get("limit_code")
    return TenantPlanLimitCheck(
        allowed=row.get("allowed") is True,
        limit_code=limit_code if isinstance(limit_code, str) else "UNKNOWN",
        cap=_to_count(row.get("cap")),
        active_students=_to_count(row.get("active_students")),
        active_staff=_to_count(row.get("active_staff")),
        projected_total=_to_count(row.get("projected_total")),
        overage=_to_count(row.get("overage")),
        grace_started_at=_to_timestamp(row.get("grace_started_at")),
        grace_ends_at=_to_timestamp(row.get("grace_ends_at")),
        blocked_new_adds=row.get("blocked_new_adds") is True,
    )


async def check_tenant_plan_limit(
    db: AsyncSession,
    tenant_id: str,
    add_students: int = 0,
    add_staff: int = 0,
) -> TenantPlanLimitCheck:
    rows = await call_procedure(db, CHECK_PLAN_LIMIT_PROCEDURE, {
        "p_tenant_id": tenant_id,
        "p_add_students": max(0, int(add_students)),
        "p_add_staff": max(0, int(add_staff)),
    })
    row = first_row(rows)
    if row is None:
        raise RuntimeError("Plan limit check returned no data")
    return limit_check_from_row(row)


async def enforce_tenant_plan_limit(
    db: AsyncSession,
    tenant_id: str,
    add_students: int = 0,
    add_staff: int = 0,
) -> TenantPlanLimitCheck:
    """זורק TenantPlanLimitExceededError (409) כשההוספה חוסמת"""
    check = await check_tenant_plan_limit(db, tenant_id, add_students, add_staff)
    if check.allowed:
        return check

    logger.warning(
        "Tenant plan limit reached",
        extra_data={
            "tenant_id": tenant_id,
            "cap": check.cap,
            "projected_total": check.projected_total,
            "blocked_new_adds": check.blocked_new_adds,
        },
    )
    raise TenantPlanLimitExceededError(check.to_error_details())
